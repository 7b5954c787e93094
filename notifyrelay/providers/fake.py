from __future__ import annotations

from collections import deque
from typing import Iterable

from notifyrelay.providers.base import OutboundMessage


class FakeSender:
    def __init__(self, outcomes: Iterable[bool | Exception] | None = None, *, default: bool = True) -> None:
        # Scripted outcomes are consumed in order, then the default applies.
        self._outcomes: deque[bool | Exception] = deque(outcomes or [])
        self._default = default
        self.sent: list[OutboundMessage] = []

    async def send(self, message: OutboundMessage) -> bool:
        self.sent.append(message)
        outcome = self._outcomes.popleft() if self._outcomes else self._default
        if isinstance(outcome, Exception):
            raise outcome
        return bool(outcome)
