from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import json
from uuid import uuid4

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from notifyrelay.domain.models import AuditLog, DeliveryAttempt, Notification, NotificationJob
from notifyrelay.persistence.repos import notifications as notifications_repo
from notifyrelay.persistence.repos.audit import list_events
from notifyrelay.providers.fake import FakeSender
from notifyrelay.providers.registry import ProviderRegistry
from notifyrelay.services.backoff import RetryPolicy
from notifyrelay.services.delivery import DeliveryWorker
from notifyrelay.services.intake import submit_notification
from notifyrelay.services.worker import run_delivery_cycle, run_delivery_loop


def _worker(session_factory, senders, *, max_attempts: int = 5, renderer=None) -> DeliveryWorker:
    return DeliveryWorker(
        registry=ProviderRegistry(senders),
        session_factory=session_factory,
        renderer=renderer,
        policy=RetryPolicy(max_attempts=max_attempts, base_backoff_s=30, max_backoff_s=3600),
    )


async def _state(session_factory, notification_id: str):
    async with session_factory() as session:
        notification = await session.get(Notification, notification_id)
        job = await notifications_repo.get_job_for_notification(session, notification_id)
        attempts = await notifications_repo.list_delivery_attempts(session, [notification_id])
        events = await list_events(session, notification_id=notification_id)
    return notification, job, attempts, [event.action for event in events]


async def _submit(session_factory, now, **overrides) -> str:
    values = {"recipient": "a@b.com", "channel": "email", "template_key": "welcome", "payload": {"name": "Ada"}}
    values.update(overrides)
    async with session_factory() as session:
        result = await submit_notification(session, now=now, **values)
    return result.notification_id


@pytest.mark.asyncio
async def test_successful_delivery_marks_sent_and_completes_job(session_factory, add_template, now) -> None:
    await add_template("welcome", subject="Welcome {{ name }}", body="Hi {{ name }}, thanks for joining.")
    notification_id = await _submit(session_factory, now)
    sender = FakeSender()
    worker = _worker(session_factory, {"email": sender})

    outcome = await worker.run_once(now=now)

    assert outcome.outcome == "sent"
    assert outcome.attempt_no == 1
    assert sender.sent[0].subject == "Welcome Ada"
    assert sender.sent[0].body == "Hi Ada, thanks for joining."
    notification, job, attempts, actions = await _state(session_factory, notification_id)
    assert notification.status == "sent"
    assert notification.sent_at == now
    assert job.status == "completed"
    assert job.attempt_count == 1
    assert [(row.success, row.status) for row in attempts] == [(True, "success")]
    assert actions[-1] == "NotificationSent"


@pytest.mark.asyncio
async def test_idle_worker_returns_none(session_factory, now) -> None:
    assert await _worker(session_factory, {"email": FakeSender()}).run_once(now=now) is None


@pytest.mark.asyncio
async def test_failure_reschedules_with_backoff(session_factory, add_template, now) -> None:
    await add_template("welcome", subject="Welcome", body="Hi")
    notification_id = await _submit(session_factory, now)
    worker = _worker(session_factory, {"email": FakeSender(default=False)})

    outcome = await worker.run_once(now=now)

    assert outcome.outcome == "retry_scheduled"
    notification, job, attempts, actions = await _state(session_factory, notification_id)
    assert notification.status == "pending"
    assert job.status == "queued"
    assert job.next_attempt_at == now + timedelta(seconds=60)
    assert attempts[0].status == "failed_retry"
    assert attempts[0].retry_after_seconds == 60
    assert attempts[0].error_message == "Provider reported delivery failure"
    assert actions[-1] == "NotificationRetryScheduled"
    # Not eligible again until the backoff elapses.
    assert await worker.run_once(now=now + timedelta(seconds=30)) is None


@pytest.mark.asyncio
async def test_exhausting_attempts_fails_notification_and_job(session_factory, add_template, now) -> None:
    await add_template("welcome", subject="Welcome", body="Hi")
    notification_id = await _submit(session_factory, now)
    sender = FakeSender(default=False)
    worker = _worker(session_factory, {"email": sender}, max_attempts=3)

    outcomes = []
    for cycle in range(3):
        outcomes.append(await worker.run_once(now=now + timedelta(hours=2 * cycle)))

    assert [item.outcome for item in outcomes] == ["retry_scheduled", "retry_scheduled", "failed"]
    assert [item.attempt_no for item in outcomes] == [1, 2, 3]
    notification, job, attempts, actions = await _state(session_factory, notification_id)
    assert notification.status == "failed"
    assert job.status == "failed"
    assert job.attempt_count == 3
    assert [row.status for row in attempts] == ["failed_retry", "failed_retry", "failed"]
    assert [row.retry_after_seconds for row in attempts] == [60, 120, None]
    assert actions[-1] == "NotificationFailed"
    # Terminal: nothing left to claim.
    assert await worker.run_once(now=now + timedelta(days=1)) is None
    assert len(sender.sent) == 3


@pytest.mark.asyncio
async def test_one_failure_short_of_limit_stays_pending(session_factory, add_template, now) -> None:
    await add_template("welcome", subject="Welcome", body="Hi")
    notification_id = await _submit(session_factory, now)
    worker = _worker(session_factory, {"email": FakeSender(default=False)}, max_attempts=3)

    await worker.run_once(now=now)
    await worker.run_once(now=now + timedelta(hours=1))

    notification, job, attempts, _ = await _state(session_factory, notification_id)
    assert notification.status == "pending"
    assert job.status == "queued"
    assert job.attempt_count == 2
    assert job.next_attempt_at == now + timedelta(hours=1, seconds=120)
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_retry_then_success(session_factory, add_template, now) -> None:
    await add_template("welcome", subject="Welcome", body="Hi")
    notification_id = await _submit(session_factory, now)
    worker = _worker(session_factory, {"email": FakeSender([False, True])})

    await worker.run_once(now=now)
    outcome = await worker.run_once(now=now + timedelta(minutes=5))

    assert outcome.outcome == "sent"
    assert outcome.attempt_no == 2
    notification, job, attempts, _ = await _state(session_factory, notification_id)
    assert notification.status == "sent"
    assert job.status == "completed"
    assert [row.status for row in attempts] == ["failed_retry", "success"]


@pytest.mark.asyncio
async def test_provider_exception_is_a_retriable_failure(session_factory, now) -> None:
    notification_id = await _submit(session_factory, now, template_key=None, subject="S", body="B")
    worker = _worker(session_factory, {"email": FakeSender([ConnectionError("smtp timeout")])})

    outcome = await worker.run_once(now=now)

    assert outcome.outcome == "retry_scheduled"
    assert "smtp timeout" in outcome.error
    _, job, attempts, _ = await _state(session_factory, notification_id)
    assert job.status == "queued"
    assert attempts[0].error_message == "ConnectionError: smtp timeout"


@pytest.mark.asyncio
async def test_missing_provider_is_terminal_configuration_error(session_factory, now) -> None:
    notification_id = await _submit(session_factory, now, channel="sms", template_key=None, subject="S", body="B")
    worker = _worker(session_factory, {"email": FakeSender()})

    outcome = await worker.run_once(now=now)

    assert outcome.outcome == "config_error"
    notification, job, attempts, actions = await _state(session_factory, notification_id)
    assert notification.status == "failed"
    assert job.status == "failed"
    assert job.attempt_count == 1
    assert [(row.success, row.status) for row in attempts] == [(False, "config_error")]
    assert "sms" in attempts[0].error_message
    assert actions[-1] == "NotificationFailed"


@pytest.mark.asyncio
async def test_orphaned_job_is_completed_without_attempt(session_factory, now) -> None:
    # SQLite does not enforce the foreign key, which lets a job outlive its notification here.
    job_id = uuid4().hex
    async with session_factory() as session:
        session.add(
            NotificationJob(
                id=job_id,
                notification_id="missing-notification",
                enqueued_at=now,
                ready_at=now,
                status="queued",
                attempt_count=0,
            )
        )
        await session.commit()
    sender = FakeSender()

    outcome = await _worker(session_factory, {"email": sender}).run_once(now=now)

    assert outcome.outcome == "orphaned"
    assert sender.sent == []
    async with session_factory() as session:
        job = await session.get(NotificationJob, job_id)
        attempts = (await session.execute(select(DeliveryAttempt))).scalars().all()
        audit = (await session.execute(select(AuditLog.action))).scalars().all()
    assert job.status == "completed"
    assert attempts == []
    assert audit == ["JobOrphaned"]


@pytest.mark.asyncio
async def test_job_for_already_sent_notification_is_skipped_and_audited(session_factory, now) -> None:
    notification_id = await _submit(session_factory, now, template_key=None, subject="Hi", body="There")
    async with session_factory() as session:
        notification = await session.get(Notification, notification_id)
        await notifications_repo.update_notification_status(
            session, notification, status="sent", at=now, sent_at=now
        )
        await session.commit()
    sender = FakeSender()

    outcome = await _worker(session_factory, {"email": sender}).run_once(now=now)

    assert outcome.outcome == "skipped"
    assert sender.sent == []
    notification, job, attempts, actions = await _state(session_factory, notification_id)
    assert notification.status == "sent"
    assert job.status == "completed"
    assert job.completed_at == now
    assert attempts == []
    assert actions[-1] == "JobSkipped"
    async with session_factory() as session:
        events = await list_events(session, notification_id=notification_id)
    assert json.loads(events[-1].details) == {"job_id": job.id, "notification_status": "sent"}


@pytest.mark.asyncio
async def test_unknown_template_falls_back_to_literal_content(session_factory, now) -> None:
    await _submit(session_factory, now, template_key="does-not-exist", subject="Literal subject", body="Literal body")
    sender = FakeSender()

    outcome = await _worker(session_factory, {"email": sender}).run_once(now=now)

    assert outcome.outcome == "sent"
    assert sender.sent[0].subject == "Literal subject"
    assert sender.sent[0].body == "Literal body"


@pytest.mark.asyncio
async def test_render_failure_falls_back_to_raw_template(session_factory, add_template, now) -> None:
    await add_template("welcome", subject="Welcome {{ missing }}", body="Hi {{ name }}")
    await _submit(session_factory, now)
    sender = FakeSender()

    outcome = await _worker(session_factory, {"email": sender}).run_once(now=now)

    assert outcome.outcome == "sent"
    assert sender.sent[0].subject == "Welcome {{ missing }}"
    assert sender.sent[0].body == "Hi Ada"


@pytest.mark.asyncio
async def test_unexpected_error_is_contained_and_retried(session_factory, now) -> None:
    notification_id = await _submit(session_factory, now, template_key=None, subject="S", body="B")
    sender = FakeSender()
    worker = _worker(session_factory, {"email": sender})

    async def broken_build(*args, **kwargs):
        raise RuntimeError("storage hiccup")

    worker._build_message = broken_build

    outcome = await worker.run_once(now=now)

    assert outcome.outcome == "retry_scheduled"
    assert outcome.error == "RuntimeError: storage hiccup"
    assert sender.sent == []
    notification, job, attempts, _ = await _state(session_factory, notification_id)
    assert notification.status == "pending"
    assert job.status == "queued"
    assert job.attempt_count == 1
    assert attempts[0].status == "failed_retry"


@pytest.mark.asyncio
async def test_concurrent_workers_deliver_each_notification_once(session_factory, now) -> None:
    ids = [
        await _submit(session_factory, now, recipient=f"user{index}@b.com", template_key=None, subject="S", body="B")
        for index in range(5)
    ]
    sender = FakeSender()
    workers = [_worker(session_factory, {"email": sender}) for _ in range(3)]

    async def drain(worker: DeliveryWorker) -> None:
        for _ in range(10):
            await worker.run_once(now=now)

    await asyncio.gather(*(drain(worker) for worker in workers))

    delivered = sorted(message.notification_id for message in sender.sent)
    assert delivered == sorted(ids)
    for notification_id in ids:
        notification, job, attempts, _ = await _state(session_factory, notification_id)
        assert notification.status == "sent"
        assert job.attempt_count == 1
        assert len(attempts) == 1


@pytest.mark.asyncio
async def test_delivery_loop_survives_errors_and_stops_on_event() -> None:
    stop_event = asyncio.Event()
    calls: list[int] = []

    class FlakyWorker:
        name = "flaky"

        async def run_once(self):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")
            stop_event.set()

    await asyncio.wait_for(run_delivery_loop(FlakyWorker(), stop_event, interval_s=0.01), timeout=5)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_delivery_cycle_waits_for_migrations(tmp_path) -> None:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'unmigrated.db'}")
    try:
        worker = _worker(async_sessionmaker(engine, expire_on_commit=False), {"email": FakeSender()})
        assert await run_delivery_cycle(worker) == "waiting_for_migrations"
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_delivery_cycle_reports_outcome(session_factory) -> None:
    # The cycle runs on the wall clock, so the job is submitted "now".
    await _submit(session_factory, datetime.now(timezone.utc), template_key=None, subject="S", body="B")
    worker = _worker(session_factory, {"email": FakeSender()})
    assert await run_delivery_cycle(worker) == "sent"
    assert await run_delivery_cycle(worker) == "idle"
