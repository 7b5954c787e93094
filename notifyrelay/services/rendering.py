from __future__ import annotations

from typing import Any, Protocol

import jinja2
from jinja2.sandbox import SandboxedEnvironment

from notifyrelay.core.errors import TemplateRenderError


class TemplateRenderer(Protocol):
    def render(self, template_text: str, payload: dict[str, Any] | None) -> str:
        ...


class JinjaTemplateRenderer:
    """Render notification templates with a sandboxed Jinja environment.

    Unknown variables raise instead of rendering as blanks, so a payload that
    does not match its template is reported as a render failure.
    """

    def __init__(self) -> None:
        self._env = SandboxedEnvironment(
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )

    def render(self, template_text: str, payload: dict[str, Any] | None) -> str:
        try:
            template = self._env.from_string(template_text or "")
            return template.render(**(payload or {}))
        except jinja2.TemplateError as exc:
            raise TemplateRenderError(str(exc)) from exc
        except (TypeError, ValueError) as exc:
            # Payload shapes jinja cannot handle (e.g. non-string keys) surface as render failures too.
            raise TemplateRenderError(str(exc)) from exc
