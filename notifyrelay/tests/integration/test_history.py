from __future__ import annotations

from datetime import timedelta

import pytest

from notifyrelay.core.errors import ValidationError
from notifyrelay.providers.fake import FakeSender
from notifyrelay.providers.registry import ProviderRegistry
from notifyrelay.services.backoff import RetryPolicy
from notifyrelay.services.delivery import DeliveryWorker
from notifyrelay.services.history import get_customer_history, get_notification_status, rendered_preview
from notifyrelay.services.intake import submit_notification


async def _submit(session, at, **overrides) -> str:
    values = {
        "recipient": "a@b.com",
        "channel": "email",
        "subject": "Order update",
        "body": "Your order shipped",
        "customer_id": "cust-1",
    }
    values.update(overrides)
    result = await submit_notification(session, now=at, **values)
    return result.notification_id


@pytest.mark.asyncio
async def test_history_is_newest_first_and_paged(session, now) -> None:
    ids = [await _submit(session, now + timedelta(minutes=index)) for index in range(5)]
    await _submit(session, now, customer_id="cust-2")

    first_page = await get_customer_history(session, customer_id="cust-1", page=1, page_size=2)
    assert [item.notification_id for item in first_page.items] == [ids[4], ids[3]]
    assert first_page.total_items == 5
    assert first_page.total_pages == 3
    assert first_page.has_next is True
    assert first_page.has_previous is False

    last_page = await get_customer_history(session, customer_id="cust-1", page=3, page_size=2)
    assert [item.notification_id for item in last_page.items] == [ids[0]]
    assert last_page.has_next is False
    assert last_page.has_previous is True


@pytest.mark.asyncio
async def test_history_filters_by_status_and_date(session, now) -> None:
    await _submit(session, now)
    scheduled_id = await _submit(session, now + timedelta(hours=1), send_at=now + timedelta(days=1))

    scheduled = await get_customer_history(session, customer_id="cust-1", status="Scheduled")
    assert [item.notification_id for item in scheduled.items] == [scheduled_id]
    assert scheduled.items[0].scheduled_at == now + timedelta(days=1)

    windowed = await get_customer_history(
        session,
        customer_id="cust-1",
        date_from=now + timedelta(minutes=30),
        date_to=now + timedelta(hours=2),
    )
    assert [item.notification_id for item in windowed.items] == [scheduled_id]


@pytest.mark.asyncio
async def test_history_summarises_delivery_attempts(session, session_factory, now) -> None:
    notification_id = await _submit(session, now, body="x" * 150)
    worker = DeliveryWorker(
        registry=ProviderRegistry({"email": FakeSender(default=False)}),
        session_factory=session_factory,
        policy=RetryPolicy(max_attempts=2),
    )
    await worker.run_once(now=now)
    await worker.run_once(now=now + timedelta(hours=1))

    async with session_factory() as read_session:
        page = await get_customer_history(read_session, customer_id="cust-1")
        status = await get_notification_status(read_session, notification_id)
    item = page.items[0]
    assert item.notification_id == notification_id
    assert item.status == "failed"
    assert item.attempt_count == 2
    assert item.last_error == "Provider reported delivery failure"
    assert item.failed_at == now + timedelta(hours=1)
    assert item.sent_at is None
    assert item.rendered_preview == "Order update: " + "x" * 100 + "..."

    assert status.status == "failed"
    assert [attempt.status for attempt in status.attempts] == ["failed_retry", "failed"]


@pytest.mark.asyncio
async def test_status_of_unknown_notification_is_none(session) -> None:
    assert await get_notification_status(session, "nope") is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"customer_id": " "},
        {"customer_id": "cust-1", "page": 0},
        {"customer_id": "cust-1", "page_size": 0},
        {"customer_id": "cust-1", "page_size": 101},
        {"customer_id": "cust-1", "status": "delivered"},
    ],
)
async def test_history_rejects_bad_queries(session, kwargs) -> None:
    with pytest.raises(ValidationError):
        await get_customer_history(session, **kwargs)


@pytest.mark.asyncio
async def test_history_rejects_inverted_date_range(session, now) -> None:
    with pytest.raises(ValidationError):
        await get_customer_history(session, customer_id="cust-1", date_from=now, date_to=now - timedelta(days=1))


def test_rendered_preview_truncates_long_bodies() -> None:
    assert rendered_preview("Hi", "short") == "Hi: short"
    assert rendered_preview("Hi", "b" * 101) == "Hi: " + "b" * 100 + "..."
    assert rendered_preview(None, None) is None


def test_rendered_preview_needs_subject_and_body() -> None:
    assert rendered_preview(None, "body only") is None
    assert rendered_preview("subject only", None) is None
    assert rendered_preview("", "body") is None


@pytest.mark.asyncio
async def test_template_only_notification_has_no_preview(session, now) -> None:
    await _submit(session, now, subject=None, body=None, template_key="welcome")

    page = await get_customer_history(session, customer_id="cust-1")

    assert page.items[0].template_key == "welcome"
    assert page.items[0].rendered_preview is None
