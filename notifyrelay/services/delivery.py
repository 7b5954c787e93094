from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.core.errors import ProviderNotConfiguredError
from notifyrelay.domain.models import (
    ATTEMPT_CONFIG_ERROR,
    ATTEMPT_FAILED,
    ATTEMPT_FAILED_RETRY,
    ATTEMPT_SUCCESS,
    NOTIFICATION_FAILED,
    NOTIFICATION_SENT,
    NOTIFICATION_TERMINAL_STATUSES,
    Notification,
)
from notifyrelay.persistence.repos import notifications as notifications_repo
from notifyrelay.persistence.repos.templates import get_template_by_key
from notifyrelay.providers.base import ChannelSender, OutboundMessage
from notifyrelay.providers.registry import ProviderRegistry
from notifyrelay.services.audit import (
    ACTION_JOB_ORPHANED,
    ACTION_JOB_SKIPPED,
    ACTION_NOTIFICATION_FAILED,
    ACTION_NOTIFICATION_RETRY_SCHEDULED,
    ACTION_NOTIFICATION_SENT,
    record_event,
)
from notifyrelay.services.backoff import RetryPolicy
from notifyrelay.services.queue import claim_next_job, complete_job, fail_job, reschedule_job
from notifyrelay.services.rendering import JinjaTemplateRenderer, TemplateRenderer


logger = logging.getLogger(__name__)

OUTCOME_SENT = "sent"
OUTCOME_RETRY_SCHEDULED = "retry_scheduled"
OUTCOME_FAILED = "failed"
OUTCOME_CONFIG_ERROR = "config_error"
OUTCOME_ORPHANED = "orphaned"
OUTCOME_SKIPPED = "skipped"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class DeliveryOutcome:
    job_id: str
    notification_id: str
    outcome: str
    attempt_no: int
    error: str | None = None


class DeliveryWorker:
    """Claims one ready job per call and drives it to sent, retry or failed.

    Every error tied to a single notification is contained here: it becomes a
    delivery attempt row plus a job transition, never an exception out of
    ``run_once``. Only failures of the claim itself (storage down) propagate,
    and the polling loop logs those.
    """

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        renderer: TemplateRenderer | None = None,
        policy: RetryPolicy | None = None,
        name: str = "delivery-worker",
    ) -> None:
        if session_factory is None:
            from notifyrelay.persistence.db import SessionLocal

            session_factory = SessionLocal
        self.registry = registry
        self.session_factory = session_factory
        self.renderer = renderer or JinjaTemplateRenderer()
        self.policy = policy or RetryPolicy.from_settings()
        self.name = name

    async def run_once(self, *, now: datetime | None = None) -> DeliveryOutcome | None:
        async with self.session_factory() as session:
            job = await claim_next_job(session, now=now)
            if job is None:
                return None
            # Plain values survive the rollbacks below; ORM attributes may not.
            job_id = job.id
            notification_id = job.notification_id
            attempt_no = int(job.attempt_count)
            logger.debug(
                "delivery_job_claimed worker=%s job_id=%s notification_id=%s attempt=%s",
                self.name,
                job_id,
                notification_id,
                attempt_no,
            )
            return await self._process(
                session,
                job_id=job_id,
                notification_id=notification_id,
                attempt_no=attempt_no,
                now=now,
            )

    async def _process(
        self,
        session: AsyncSession,
        *,
        job_id: str,
        notification_id: str,
        attempt_no: int,
        now: datetime | None,
    ) -> DeliveryOutcome:
        notification = await notifications_repo.get_notification(session, notification_id)
        if notification is None:
            return await self._complete_orphan(session, job_id=job_id, notification_id=notification_id, attempt_no=attempt_no, now=now)
        if notification.status in NOTIFICATION_TERMINAL_STATUSES:
            return await self._complete_stale(
                session,
                job_id=job_id,
                notification_id=notification_id,
                notification_status=notification.status,
                attempt_no=attempt_no,
                now=now,
            )

        try:
            sender = self._resolve_sender(notification.channel)
            message = await self._build_message(session, notification, attempt_no=attempt_no)
            try:
                delivered = await sender.send(message)
                error = None if delivered else "Provider reported delivery failure"
            except Exception as exc:  # noqa: BLE001 - provider errors become a failed attempt, not a crash.
                delivered = False
                error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "delivery_provider_error job_id=%s notification_id=%s attempt=%s error=%s",
                    job_id,
                    notification_id,
                    attempt_no,
                    error,
                )
            if delivered:
                return await self._mark_sent(session, job_id=job_id, notification_id=notification_id, attempt_no=attempt_no, now=now)
            return await self._handle_failure(
                session,
                job_id=job_id,
                notification_id=notification_id,
                attempt_no=attempt_no,
                error=error or "Delivery failed",
                now=now,
            )
        except ProviderNotConfiguredError as exc:
            return await self._fail_configuration(
                session,
                job_id=job_id,
                notification_id=notification_id,
                attempt_no=attempt_no,
                error=str(exc),
                now=now,
            )
        except Exception as exc:  # noqa: BLE001 - one bad notification must not stop the worker loop.
            logger.exception(
                "delivery_iteration_failed worker=%s job_id=%s notification_id=%s",
                self.name,
                job_id,
                notification_id,
            )
            await session.rollback()
            return await self._handle_failure(
                session,
                job_id=job_id,
                notification_id=notification_id,
                attempt_no=attempt_no,
                error=f"{type(exc).__name__}: {exc}",
                now=now,
            )

    def _resolve_sender(self, channel: str) -> ChannelSender:
        sender = self.registry.get(channel)
        if sender is None:
            raise ProviderNotConfiguredError(f"No sender registered for channel '{channel}'")
        return sender

    async def _build_message(
        self,
        session: AsyncSession,
        notification: Notification,
        *,
        attempt_no: int,
    ) -> OutboundMessage:
        payload: dict[str, Any] = notification.payload_json if isinstance(notification.payload_json, dict) else {}
        subject = notification.subject
        body = notification.body
        if notification.template_key:
            template = await get_template_by_key(session, notification.template_key)
            if template is None:
                logger.warning(
                    "template_not_found notification_id=%s template_key=%s",
                    notification.id,
                    notification.template_key,
                )
            else:
                subject = self._render_or_raw(template.subject, payload, notification_id=notification.id, part="subject")
                body = self._render_or_raw(template.body, payload, notification_id=notification.id, part="body")
        return OutboundMessage(
            notification_id=notification.id,
            channel=notification.channel,
            recipient=notification.recipient,
            subject=subject,
            body=body,
            attempt_no=attempt_no,
            payload=payload,
        )

    def _render_or_raw(self, template_text: str, payload: dict[str, Any], *, notification_id: str, part: str) -> str:
        try:
            return self.renderer.render(template_text, payload)
        except Exception as exc:  # noqa: BLE001 - a broken template degrades to raw text.
            logger.warning(
                "template_render_failed notification_id=%s part=%s error=%s",
                notification_id,
                part,
                exc,
            )
            return template_text

    async def _complete_orphan(
        self,
        session: AsyncSession,
        *,
        job_id: str,
        notification_id: str,
        attempt_no: int,
        now: datetime | None,
    ) -> DeliveryOutcome:
        at = now or _utc_now()
        await complete_job(session, job_id, now=at)
        logger.warning("delivery_job_orphaned job_id=%s notification_id=%s", job_id, notification_id)
        await record_event(
            session=session,
            action=ACTION_JOB_ORPHANED,
            notification_id=notification_id,
            details={"job_id": job_id},
            occurred_at=at,
        )
        return DeliveryOutcome(job_id, notification_id, OUTCOME_ORPHANED, attempt_no)

    async def _complete_stale(
        self,
        session: AsyncSession,
        *,
        job_id: str,
        notification_id: str,
        notification_status: str,
        attempt_no: int,
        now: datetime | None,
    ) -> DeliveryOutcome:
        # Status only moves forward; a stale job for a finished notification is closed without an attempt.
        at = now or _utc_now()
        await complete_job(session, job_id, now=at)
        logger.warning(
            "delivery_job_for_terminal_notification job_id=%s notification_id=%s status=%s",
            job_id,
            notification_id,
            notification_status,
        )
        await record_event(
            session=session,
            action=ACTION_JOB_SKIPPED,
            notification_id=notification_id,
            details={"job_id": job_id, "notification_status": notification_status},
            occurred_at=at,
        )
        return DeliveryOutcome(job_id, notification_id, OUTCOME_SKIPPED, attempt_no)

    async def _mark_sent(
        self,
        session: AsyncSession,
        *,
        job_id: str,
        notification_id: str,
        attempt_no: int,
        now: datetime | None,
    ) -> DeliveryOutcome:
        at = now or _utc_now()
        notification = await notifications_repo.get_notification(session, notification_id)
        await notifications_repo.add_delivery_attempt(
            session,
            notification_id=notification_id,
            attempted_at=at,
            success=True,
            status=ATTEMPT_SUCCESS,
            response_message="Delivered",
        )
        if notification is not None:
            await notifications_repo.update_notification_status(
                session, notification, status=NOTIFICATION_SENT, at=at, sent_at=at
            )
        await complete_job(session, job_id, now=at, commit=False)
        await session.commit()
        logger.info("notification_sent job_id=%s notification_id=%s attempt=%s", job_id, notification_id, attempt_no)
        await record_event(
            session=session,
            action=ACTION_NOTIFICATION_SENT,
            notification_id=notification_id,
            details={"job_id": job_id, "attempt_no": attempt_no},
            occurred_at=at,
        )
        return DeliveryOutcome(job_id, notification_id, OUTCOME_SENT, attempt_no)

    async def _handle_failure(
        self,
        session: AsyncSession,
        *,
        job_id: str,
        notification_id: str,
        attempt_no: int,
        error: str,
        now: datetime | None,
    ) -> DeliveryOutcome:
        at = now or _utc_now()
        terminal = self.policy.is_exhausted(attempt_no)
        delay = self.policy.backoff(max(1, attempt_no))
        notification = await notifications_repo.get_notification(session, notification_id)
        await notifications_repo.add_delivery_attempt(
            session,
            notification_id=notification_id,
            attempted_at=at,
            success=False,
            status=ATTEMPT_FAILED if terminal else ATTEMPT_FAILED_RETRY,
            error_message=error,
            retry_after_seconds=None if terminal else int(delay.total_seconds()),
        )
        if terminal:
            if notification is not None:
                await notifications_repo.update_notification_status(
                    session, notification, status=NOTIFICATION_FAILED, at=at
                )
            await fail_job(session, job_id, now=at, commit=False)
            await session.commit()
            logger.warning(
                "notification_delivery_exhausted job_id=%s notification_id=%s attempts=%s error=%s",
                job_id,
                notification_id,
                attempt_no,
                error,
            )
            await record_event(
                session=session,
                action=ACTION_NOTIFICATION_FAILED,
                notification_id=notification_id,
                details={
                    "job_id": job_id,
                    "attempt_no": attempt_no,
                    "reason": "max_attempts_exceeded",
                    "error": error,
                },
                occurred_at=at,
            )
            return DeliveryOutcome(job_id, notification_id, OUTCOME_FAILED, attempt_no, error)

        await reschedule_job(session, job_id, delay, now=at, commit=False)
        await session.commit()
        logger.info(
            "notification_retry_scheduled job_id=%s notification_id=%s attempt=%s retry_after_s=%s",
            job_id,
            notification_id,
            attempt_no,
            int(delay.total_seconds()),
        )
        await record_event(
            session=session,
            action=ACTION_NOTIFICATION_RETRY_SCHEDULED,
            notification_id=notification_id,
            details={
                "job_id": job_id,
                "attempt_no": attempt_no,
                "retry_after_seconds": int(delay.total_seconds()),
                "error": error,
            },
            occurred_at=at,
        )
        return DeliveryOutcome(job_id, notification_id, OUTCOME_RETRY_SCHEDULED, attempt_no, error)

    async def _fail_configuration(
        self,
        session: AsyncSession,
        *,
        job_id: str,
        notification_id: str,
        attempt_no: int,
        error: str,
        now: datetime | None,
    ) -> DeliveryOutcome:
        at = now or _utc_now()
        notification = await notifications_repo.get_notification(session, notification_id)
        await notifications_repo.add_delivery_attempt(
            session,
            notification_id=notification_id,
            attempted_at=at,
            success=False,
            status=ATTEMPT_CONFIG_ERROR,
            error_message=error,
        )
        if notification is not None:
            await notifications_repo.update_notification_status(
                session, notification, status=NOTIFICATION_FAILED, at=at
            )
        await fail_job(session, job_id, now=at, commit=False)
        await session.commit()
        logger.error("notification_provider_missing job_id=%s notification_id=%s error=%s", job_id, notification_id, error)
        await record_event(
            session=session,
            action=ACTION_NOTIFICATION_FAILED,
            notification_id=notification_id,
            details={"job_id": job_id, "attempt_no": attempt_no, "reason": "provider_not_configured", "error": error},
            occurred_at=at,
        )
        return DeliveryOutcome(job_id, notification_id, OUTCOME_CONFIG_ERROR, attempt_no, error)
