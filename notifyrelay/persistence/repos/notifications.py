from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.domain.models import (
    NOTIFICATION_SCHEDULED,
    DeliveryAttempt,
    Notification,
    NotificationJob,
)


async def create_notification(
    session: AsyncSession,
    *,
    notification_id: str,
    recipient: str,
    channel: str,
    status: str,
    created_at: datetime,
    template_key: str | None = None,
    subject: str | None = None,
    body: str | None = None,
    payload_json: dict[str, Any] | None = None,
    send_at: datetime | None = None,
    idempotency_key: str | None = None,
    customer_id: str | None = None,
) -> Notification:
    # Stage only; callers own the commit so the idempotency constraint surfaces at their boundary.
    row = Notification(
        id=notification_id,
        customer_id=customer_id,
        recipient=recipient,
        channel=channel,
        template_key=template_key,
        subject=subject,
        body=body,
        payload_json=payload_json,
        status=status,
        created_at=created_at,
        send_at=send_at,
        idempotency_key=idempotency_key,
    )
    session.add(row)
    return row


async def get_notification(session: AsyncSession, notification_id: str) -> Notification | None:
    return await session.get(Notification, notification_id)


async def get_notification_by_idempotency_key(
    session: AsyncSession,
    idempotency_key: str,
) -> Notification | None:
    result = await session.execute(
        select(Notification).where(Notification.idempotency_key == idempotency_key)
    )
    return result.scalar_one_or_none()


async def update_notification_status(
    session: AsyncSession,
    notification: Notification,
    *,
    status: str,
    at: datetime,
    sent_at: datetime | None = None,
) -> Notification:
    notification.status = status
    notification.updated_at = at
    if sent_at is not None:
        notification.sent_at = sent_at
    await session.flush()
    return notification


async def list_due_scheduled_notifications(
    session: AsyncSession,
    *,
    now: datetime,
    limit: int,
    lock: bool,
) -> list[Notification]:
    # NOT EXISTS keeps a notification that already owns a job from being promoted twice.
    has_job = exists().where(NotificationJob.notification_id == Notification.id)
    stmt = (
        select(Notification)
        .where(
            Notification.status == NOTIFICATION_SCHEDULED,
            Notification.send_at.is_not(None),
            Notification.send_at <= now,
            ~has_job,
        )
        .order_by(Notification.send_at.asc(), Notification.created_at.asc())
        .limit(max(1, int(limit)))
    )
    if lock:
        stmt = stmt.with_for_update(skip_locked=True, of=Notification)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_customer_notifications(
    session: AsyncSession,
    *,
    customer_id: str,
    status: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
) -> int:
    stmt = select(func.count()).select_from(Notification)
    stmt = _apply_history_filters(
        stmt,
        customer_id=customer_id,
        status=status,
        created_from=created_from,
        created_to=created_to,
    )
    return int((await session.execute(stmt)).scalar_one() or 0)


async def list_customer_notifications(
    session: AsyncSession,
    *,
    customer_id: str,
    status: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    offset: int = 0,
    limit: int = 20,
) -> list[Notification]:
    stmt = _apply_history_filters(
        select(Notification),
        customer_id=customer_id,
        status=status,
        created_from=created_from,
        created_to=created_to,
    )
    stmt = stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def _apply_history_filters(
    stmt,
    *,
    customer_id: str,
    status: str | None,
    created_from: datetime | None,
    created_to: datetime | None,
):  # noqa: ANN001, ANN202
    stmt = stmt.where(Notification.customer_id == customer_id)
    if status:
        stmt = stmt.where(Notification.status == status)
    if created_from:
        stmt = stmt.where(Notification.created_at >= created_from)
    if created_to:
        stmt = stmt.where(Notification.created_at <= created_to)
    return stmt


async def add_delivery_attempt(
    session: AsyncSession,
    *,
    notification_id: str,
    attempted_at: datetime,
    success: bool,
    status: str,
    error_message: str | None = None,
    response_message: str | None = None,
    retry_after_seconds: int | None = None,
) -> DeliveryAttempt:
    row = DeliveryAttempt(
        notification_id=notification_id,
        attempted_at=attempted_at,
        success=success,
        status=status,
        error_message=error_message,
        response_message=response_message,
        retry_after_seconds=retry_after_seconds,
    )
    session.add(row)
    return row


async def list_delivery_attempts(
    session: AsyncSession,
    notification_ids: Sequence[str],
) -> list[DeliveryAttempt]:
    if not notification_ids:
        return []
    result = await session.execute(
        select(DeliveryAttempt)
        .where(DeliveryAttempt.notification_id.in_(list(notification_ids)))
        .order_by(DeliveryAttempt.attempted_at.asc(), DeliveryAttempt.id.asc())
    )
    return list(result.scalars().all())


async def get_job_for_notification(session: AsyncSession, notification_id: str) -> NotificationJob | None:
    result = await session.execute(
        select(NotificationJob).where(NotificationJob.notification_id == notification_id)
    )
    return result.scalar_one_or_none()
