from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.core.config import CHANNELS, get_settings
from notifyrelay.core.errors import ValidationError
from notifyrelay.domain.models import (
    NOTIFICATION_PENDING,
    NOTIFICATION_SCHEDULED,
    Notification,
)
from notifyrelay.domain.schemas import SubmitResult
from notifyrelay.persistence.repos import notifications as notifications_repo
from notifyrelay.services.audit import (
    ACTION_NOTIFICATION_CREATED,
    ACTION_NOTIFICATION_ENQUEUED,
    record_event,
)
from notifyrelay.services.queue import enqueue_job


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive timestamps from callers are read as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def _normalize_idempotency_key(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        raise ValidationError("idempotency_key is empty")
    max_length = max(1, int(get_settings().idempotency_key_max_length))
    if len(cleaned) > max_length:
        raise ValidationError(f"idempotency_key exceeds {max_length} characters")
    return cleaned


def _normalize_channel(value: str | None) -> str:
    channel = (value or "").strip().lower()
    if channel not in CHANNELS:
        raise ValidationError(f"channel must be one of: {', '.join(CHANNELS)}")
    return channel


def _replay(notification: Notification) -> SubmitResult:
    return SubmitResult(
        notification_id=notification.id,
        status=notification.status,
        scheduled_at=notification.send_at,
        idempotency_key=notification.idempotency_key,
        is_existing=True,
    )


async def submit_notification(
    session: AsyncSession,
    *,
    recipient: str,
    channel: str,
    template_key: str | None = None,
    subject: str | None = None,
    body: str | None = None,
    payload: dict[str, Any] | None = None,
    send_at: datetime | None = None,
    idempotency_key: str | None = None,
    customer_id: str | None = None,
    now: datetime | None = None,
) -> SubmitResult:
    """Validate and durably record one notification request.

    A keyed request whose key already exists returns the original
    notification with ``is_existing=True`` and writes nothing. Otherwise the
    notification is committed first, then (for immediate sends) its job, so a
    crash in between leaves an un-enqueued pending notification and never an
    orphan job.
    """
    if _blank(recipient):
        raise ValidationError("recipient is required")
    if _blank(template_key) and (_blank(subject) or _blank(body)):
        raise ValidationError("either template_key or both subject and body must be provided")
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError("payload must be an object")
    normalized_channel = _normalize_channel(channel)
    key = _normalize_idempotency_key(idempotency_key)

    if key is not None:
        existing = await notifications_repo.get_notification_by_idempotency_key(session, key)
        if existing is not None:
            logger.info("notification_idempotent_replay notification_id=%s", existing.id)
            return _replay(existing)

    now = _as_utc(now) or _utc_now()
    send_at = _as_utc(send_at)
    status = NOTIFICATION_SCHEDULED if send_at is not None and send_at > now else NOTIFICATION_PENDING

    notification = await notifications_repo.create_notification(
        session,
        notification_id=uuid4().hex,
        recipient=recipient.strip(),
        channel=normalized_channel,
        status=status,
        created_at=now,
        template_key=None if _blank(template_key) else template_key.strip(),
        subject=subject,
        body=body,
        payload_json=payload or {},
        send_at=send_at,
        idempotency_key=key,
        customer_id=customer_id,
    )
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent submission with the same key won the insert; answer with its row.
        await session.rollback()
        if key is None:
            raise
        existing = await notifications_repo.get_notification_by_idempotency_key(session, key)
        if existing is None:
            raise
        logger.info("notification_idempotent_race notification_id=%s", existing.id)
        return _replay(existing)

    await record_event(
        session=session,
        action=ACTION_NOTIFICATION_CREATED,
        notification_id=notification.id,
        details={"channel": normalized_channel, "status": status, "idempotency_key": key},
        occurred_at=now,
    )

    if status == NOTIFICATION_PENDING:
        job = await enqueue_job(session, notification_id=notification.id, ready_at=now, now=now)
        await record_event(
            session=session,
            action=ACTION_NOTIFICATION_ENQUEUED,
            notification_id=notification.id,
            details={"job_id": job.id, "source": "intake"},
            occurred_at=now,
        )

    return SubmitResult(
        notification_id=notification.id,
        status=status,
        scheduled_at=send_at if status == NOTIFICATION_SCHEDULED else None,
        idempotency_key=key,
        is_existing=False,
    )
