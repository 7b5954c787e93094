"""Persistent job queue with a concurrency-safe claim.

Jobs live in ``notification_jobs``. A worker claims the oldest ready job with
``SELECT ... FOR UPDATE SKIP LOCKED`` and flips it to ``processing`` inside the
same transaction, so concurrent workers never receive the same row. Stores
without that primitive (SQLite in tests) can only use a read-then-update
fallback, which must be switched on explicitly with
``QUEUE_ALLOW_UNSAFE_CLAIM`` and is reported as a ``ConcurrencyFallbackWarning``.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from uuid import uuid4
import warnings

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.core.config import get_settings
from notifyrelay.core.errors import ConcurrencyFallbackWarning, ConfigurationError, DatabaseError
from notifyrelay.domain.models import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_QUEUED,
    JOB_TERMINAL_STATUSES,
    NotificationJob,
)
from notifyrelay.persistence.db import supports_skip_locked


logger = logging.getLogger(__name__)

_fallback_logged_dialects: set[str] = set()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ready_jobs_query(now: datetime):  # noqa: ANN202
    return (
        select(NotificationJob)
        .where(
            NotificationJob.status == JOB_QUEUED,
            NotificationJob.ready_at <= now,
            or_(NotificationJob.next_attempt_at.is_(None), NotificationJob.next_attempt_at <= now),
        )
        .order_by(NotificationJob.ready_at.asc(), NotificationJob.enqueued_at.asc())
        .limit(1)
    )


async def enqueue_job(
    session: AsyncSession,
    *,
    notification_id: str,
    ready_at: datetime | None = None,
    now: datetime | None = None,
    commit: bool = True,
) -> NotificationJob:
    now = now or _utc_now()
    job = NotificationJob(
        id=uuid4().hex,
        notification_id=notification_id,
        enqueued_at=now,
        ready_at=ready_at or now,
        next_attempt_at=None,
        status=JOB_QUEUED,
        attempt_count=0,
    )
    session.add(job)
    if commit:
        await session.commit()
    else:
        await session.flush()
    return job


async def claim_next_job(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    allow_unsafe: bool | None = None,
) -> NotificationJob | None:
    """Claim the earliest-ready queued job, or return None when nothing is due.

    The claimed job is committed as ``processing`` with ``attempt_count``
    incremented by one before it is returned.
    """
    now = now or _utc_now()
    if supports_skip_locked(session):
        return await _claim_locked(session, now=now)

    if allow_unsafe is None:
        allow_unsafe = get_settings().queue_allow_unsafe_claim
    dialect = session.get_bind().dialect.name
    if not allow_unsafe:
        raise ConfigurationError(
            f"Database dialect '{dialect}' has no SKIP LOCKED support; "
            "set QUEUE_ALLOW_UNSAFE_CLAIM=true only for single-worker or test deployments"
        )
    _report_unsafe_claim(dialect)
    return await _claim_unlocked(session, now=now)


async def _claim_locked(session: AsyncSession, *, now: datetime) -> NotificationJob | None:
    stmt = (
        _ready_jobs_query(now)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    job = (await session.execute(stmt)).scalar_one_or_none()
    if job is None:
        await session.rollback()
        return None
    job.status = JOB_PROCESSING
    job.attempt_count = int(job.attempt_count or 0) + 1
    job.claimed_at = now
    await session.commit()
    return job


async def _claim_unlocked(session: AsyncSession, *, now: datetime) -> NotificationJob | None:
    # The status guard on the UPDATE turns a lost race into "nothing claimed" rather than a double claim.
    candidate_id = (
        await session.execute(_ready_jobs_query(now).with_only_columns(NotificationJob.id))
    ).scalar_one_or_none()
    if candidate_id is None:
        await session.rollback()
        return None
    result = await session.execute(
        update(NotificationJob)
        .where(NotificationJob.id == candidate_id, NotificationJob.status == JOB_QUEUED)
        .values(
            status=JOB_PROCESSING,
            attempt_count=NotificationJob.attempt_count + 1,
            claimed_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        return None
    await session.commit()
    job = await session.get(NotificationJob, candidate_id, populate_existing=True)
    if job is None:
        raise DatabaseError("claimed job disappeared after commit")
    return job


def _report_unsafe_claim(dialect: str) -> None:
    warnings.warn(
        f"job claims on '{dialect}' run without SKIP LOCKED; concurrent workers are not isolated",
        ConcurrencyFallbackWarning,
        stacklevel=3,
    )
    if dialect not in _fallback_logged_dialects:
        _fallback_logged_dialects.add(dialect)
        logger.warning("queue_claim_fallback_active dialect=%s mode=read_then_update", dialect)


async def _get_mutable_job(session: AsyncSession, job_id: str) -> NotificationJob | None:
    job = await session.get(NotificationJob, job_id)
    if job is None:
        logger.warning("queue_job_missing job_id=%s", job_id)
        return None
    if job.status in JOB_TERMINAL_STATUSES:
        # Terminal jobs are frozen; later calls are no-ops.
        logger.warning("queue_job_already_terminal job_id=%s status=%s", job_id, job.status)
        return None
    return job


async def _finish(session: AsyncSession, commit: bool) -> None:
    if commit:
        await session.commit()
    else:
        await session.flush()


async def complete_job(
    session: AsyncSession,
    job_id: str,
    *,
    now: datetime | None = None,
    commit: bool = True,
) -> NotificationJob | None:
    job = await _get_mutable_job(session, job_id)
    if job is None:
        return None
    job.status = JOB_COMPLETED
    job.completed_at = now or _utc_now()
    await _finish(session, commit)
    return job


async def reschedule_job(
    session: AsyncSession,
    job_id: str,
    delay: timedelta,
    *,
    now: datetime | None = None,
    commit: bool = True,
) -> NotificationJob | None:
    # attempt_count was already advanced by the claim and stays as is.
    job = await _get_mutable_job(session, job_id)
    if job is None:
        return None
    job.status = JOB_QUEUED
    job.next_attempt_at = (now or _utc_now()) + delay
    await _finish(session, commit)
    return job


async def fail_job(
    session: AsyncSession,
    job_id: str,
    *,
    now: datetime | None = None,
    commit: bool = True,
) -> NotificationJob | None:
    job = await _get_mutable_job(session, job_id)
    if job is None:
        return None
    job.status = JOB_FAILED
    job.completed_at = now or _utc_now()
    await _finish(session, commit)
    return job


async def queue_summary(session: AsyncSession) -> dict[str, int]:
    rows = (
        await session.execute(
            select(NotificationJob.status, func.count()).group_by(NotificationJob.status)
        )
    ).all()
    summary = {status: 0 for status in (JOB_QUEUED, JOB_PROCESSING, JOB_COMPLETED, JOB_FAILED)}
    for status, count in rows:
        summary[str(status)] = int(count)
    return summary
