from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.core.config import get_settings
from notifyrelay.core.errors import ValidationError
from notifyrelay.domain.models import (
    NOTIFICATION_FAILED,
    NOTIFICATION_STATUSES,
    DeliveryAttempt,
    Notification,
)
from notifyrelay.domain.schemas import (
    CustomerNotificationHistoryItem,
    DeliveryAttemptView,
    NotificationStatusView,
    PagedResult,
)
from notifyrelay.persistence.repos import notifications as notifications_repo


_PREVIEW_BODY_LIMIT = 100


def rendered_preview(subject: str | None, body: str | None) -> str | None:
    # A preview needs both parts; template-only notifications have none.
    if not subject or not body:
        return None
    if len(body) > _PREVIEW_BODY_LIMIT:
        body = body[:_PREVIEW_BODY_LIMIT] + "..."
    return f"{subject}: {body}"


def _normalize_status_filter(status: str | None) -> str | None:
    if status is None or not status.strip():
        return None
    normalized = status.strip().lower()
    if normalized not in NOTIFICATION_STATUSES:
        raise ValidationError(f"Invalid status value: {status}")
    return normalized


def _history_item(
    notification: Notification,
    attempts: list[DeliveryAttempt],
    customer_id: str,
) -> CustomerNotificationHistoryItem:
    # attempts arrive oldest first
    last_failed = next((row for row in reversed(attempts) if not row.success), None)
    last_success = next((row for row in reversed(attempts) if row.success), None)
    return CustomerNotificationHistoryItem(
        notification_id=notification.id,
        customer_id=customer_id,
        template_key=notification.template_key,
        channel=notification.channel,
        status=notification.status,
        attempt_count=len(attempts),
        last_error=last_failed.error_message if last_failed else None,
        created_at=notification.created_at,
        scheduled_at=notification.send_at,
        sent_at=last_success.attempted_at if last_success else notification.sent_at,
        failed_at=(
            last_failed.attempted_at
            if last_failed is not None and notification.status == NOTIFICATION_FAILED
            else None
        ),
        rendered_preview=rendered_preview(notification.subject, notification.body),
    )


async def get_customer_history(
    session: AsyncSession,
    *,
    customer_id: str,
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    page_size: int | None = None,
) -> PagedResult[CustomerNotificationHistoryItem]:
    """Read-only, newest-first page of a customer's notifications with attempt summaries."""
    settings = get_settings()
    if not customer_id or not customer_id.strip():
        raise ValidationError("customer_id is required")
    resolved_page_size = settings.history_default_page_size if page_size is None else int(page_size)
    if page < 1:
        raise ValidationError("page must be greater than or equal to 1")
    if resolved_page_size < 1 or resolved_page_size > settings.history_max_page_size:
        raise ValidationError(f"page_size must be between 1 and {settings.history_max_page_size}")
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must not be after date_to")
    status_filter = _normalize_status_filter(status)

    total = await notifications_repo.count_customer_notifications(
        session,
        customer_id=customer_id,
        status=status_filter,
        created_from=date_from,
        created_to=date_to,
    )
    rows = await notifications_repo.list_customer_notifications(
        session,
        customer_id=customer_id,
        status=status_filter,
        created_from=date_from,
        created_to=date_to,
        offset=(page - 1) * resolved_page_size,
        limit=resolved_page_size,
    )
    attempts = await notifications_repo.list_delivery_attempts(session, [row.id for row in rows])
    by_notification: dict[str, list[DeliveryAttempt]] = {}
    for attempt in attempts:
        by_notification.setdefault(attempt.notification_id, []).append(attempt)

    items = [_history_item(row, by_notification.get(row.id, []), customer_id) for row in rows]
    return PagedResult[CustomerNotificationHistoryItem].build(
        items=items,
        page=page,
        page_size=resolved_page_size,
        total_items=total,
    )


async def get_notification_status(session: AsyncSession, notification_id: str) -> NotificationStatusView | None:
    notification = await notifications_repo.get_notification(session, notification_id)
    if notification is None:
        return None
    attempts = await notifications_repo.list_delivery_attempts(session, [notification.id])
    return NotificationStatusView(
        notification_id=notification.id,
        status=notification.status,
        channel=notification.channel,
        created_at=notification.created_at,
        send_at=notification.send_at,
        sent_at=notification.sent_at,
        attempts=[
            DeliveryAttemptView(
                attempted_at=row.attempted_at,
                success=row.success,
                status=row.status,
                error_message=row.error_message,
                retry_after_seconds=row.retry_after_seconds,
            )
            for row in attempts
        ],
    )
