from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.domain.models import AuditLog


logger = logging.getLogger(__name__)

ACTION_NOTIFICATION_CREATED = "NotificationCreated"
ACTION_NOTIFICATION_ENQUEUED = "NotificationEnqueued"
ACTION_NOTIFICATION_SENT = "NotificationSent"
ACTION_NOTIFICATION_RETRY_SCHEDULED = "NotificationRetryScheduled"
ACTION_NOTIFICATION_FAILED = "NotificationFailed"
ACTION_JOB_ORPHANED = "JobOrphaned"
ACTION_JOB_SKIPPED = "JobSkipped"

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub secret-like fields while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def _serialize_details(details: dict[str, Any] | str | None) -> str | None:
    if details is None:
        return None
    if isinstance(details, str):
        return details
    return json.dumps(sanitize_metadata(details), sort_keys=True, default=str)


async def record_event(
    *,
    session: AsyncSession,
    action: str,
    notification_id: str | None = None,
    details: dict[str, Any] | str | None = None,
    occurred_at: datetime | None = None,
    commit: bool = True,
    best_effort: bool = True,
) -> None:
    """Append one audit row.

    With ``commit=False`` the row joins the caller's transaction and is only
    durable once the caller commits. With ``best_effort`` a failed write is
    logged and swallowed so the triggering operation is not undone; otherwise
    it propagates.
    """
    event = AuditLog(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        action=action,
        notification_id=notification_id,
        details=_serialize_details(details),
    )
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed action=%s notification_id=%s",
            action,
            notification_id,
            exc_info=exc,
        )
