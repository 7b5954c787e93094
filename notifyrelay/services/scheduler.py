from __future__ import annotations

from datetime import datetime, timezone
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.core.config import get_settings
from notifyrelay.domain.models import NOTIFICATION_PENDING
from notifyrelay.persistence.db import supports_skip_locked
from notifyrelay.persistence.repos import notifications as notifications_repo
from notifyrelay.services.audit import ACTION_NOTIFICATION_ENQUEUED, record_event
from notifyrelay.services.queue import enqueue_job


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def promote_due_notifications(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> list[str]:
    """Move due scheduled notifications into the delivery queue.

    All promotions of one pass share a single transaction: each notification
    gets its job and its ``pending`` status together or not at all. Rows that
    fail individually are rolled back to their savepoint and left scheduled
    for the next pass. Returns the ids that were promoted.
    """
    now = now or _utc_now()
    batch_size = limit if limit is not None else get_settings().scheduler_batch_size
    due = await notifications_repo.list_due_scheduled_notifications(
        session,
        now=now,
        limit=batch_size,
        lock=supports_skip_locked(session),
    )
    if not due:
        await session.rollback()
        return []

    promoted: dict[str, str] = {}
    for notification in due:
        notification_id = notification.id
        try:
            async with session.begin_nested():
                job = await enqueue_job(session, notification_id=notification_id, ready_at=now, now=now, commit=False)
                await notifications_repo.update_notification_status(
                    session, notification, status=NOTIFICATION_PENDING, at=now
                )
        except Exception:  # noqa: BLE001 - one bad row must not block the rest of the batch.
            logger.warning("scheduler_promotion_skipped notification_id=%s", notification_id, exc_info=True)
            continue
        promoted[notification_id] = job.id

    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("scheduler_promotion_commit_failed due=%s", len(due))
        return []

    for notification_id, job_id in promoted.items():
        await record_event(
            session=session,
            action=ACTION_NOTIFICATION_ENQUEUED,
            notification_id=notification_id,
            details={"job_id": job_id, "source": "scheduler"},
            occurred_at=now,
        )
    if promoted:
        logger.info("scheduler_promoted count=%s", len(promoted))
    return list(promoted)
