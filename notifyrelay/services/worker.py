from __future__ import annotations

import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyrelay.core.config import get_settings
from notifyrelay.services.delivery import DeliveryWorker
from notifyrelay.services.scheduler import promote_due_notifications


logger = logging.getLogger(__name__)


def _is_missing_table_error(exc: Exception) -> bool:
    # Workers may boot before migrations have run; that state is temporary, not a crash.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def wait_for_stop(stop_event: asyncio.Event, interval_s: float) -> bool:
    # Sleep for one poll interval, waking early when shutdown is requested.
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, interval_s))
    except asyncio.TimeoutError:
        return False
    return True


async def run_delivery_cycle(worker: DeliveryWorker) -> str:
    try:
        outcome = await worker.run_once()
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            logger.warning("delivery cycle waiting_for_migrations worker=%s", worker.name)
            return "waiting_for_migrations"
        raise
    return "idle" if outcome is None else outcome.outcome


async def run_delivery_loop(
    worker: DeliveryWorker,
    stop_event: asyncio.Event,
    *,
    interval_s: float | None = None,
) -> None:
    # Shutdown is checked between iterations; an in-flight attempt always runs to its outcome.
    interval = get_settings().delivery_poll_interval_s if interval_s is None else interval_s
    logger.info("delivery_loop_started worker=%s interval_s=%s", worker.name, interval)
    while not stop_event.is_set():
        try:
            await run_delivery_cycle(worker)
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("delivery cycle failed worker=%s", worker.name)
        if await wait_for_stop(stop_event, interval):
            break
    logger.info("delivery_loop_stopped worker=%s", worker.name)


async def run_scheduler_cycle(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    limit: int | None = None,
) -> dict[str, object]:
    try:
        async with session_factory() as session:
            promoted = await promote_due_notifications(session, limit=limit)
    except SQLAlchemyError as exc:
        if _is_missing_table_error(exc):
            logger.warning("scheduler cycle waiting_for_migrations")
            return {"status": "waiting_for_migrations", "promoted": 0}
        raise
    return {"status": "ok", "promoted": len(promoted)}


async def run_scheduler_loop(
    stop_event: asyncio.Event,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    interval_s: float | None = None,
) -> None:
    settings = get_settings()
    interval = settings.scheduler_poll_interval_s if interval_s is None else interval_s
    if session_factory is None:
        from notifyrelay.persistence.db import SessionLocal

        session_factory = SessionLocal
    logger.info("scheduler_loop_started interval_s=%s", interval)
    while not stop_event.is_set():
        try:
            await run_scheduler_cycle(session_factory, limit=settings.scheduler_batch_size)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in logs.
            logger.exception("scheduler cycle failed")
        if await wait_for_stop(stop_event, interval):
            break
    logger.info("scheduler_loop_stopped")
