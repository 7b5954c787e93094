from __future__ import annotations

import asyncio
import logging
import signal

from notifyrelay.core.config import get_settings
from notifyrelay.persistence.db import SessionLocal
from notifyrelay.providers.registry import build_provider_registry
from notifyrelay.services.backoff import RetryPolicy
from notifyrelay.services.delivery import DeliveryWorker
from notifyrelay.services.rendering import JinjaTemplateRenderer
from notifyrelay.services.worker import run_delivery_loop, run_scheduler_loop


logger = logging.getLogger(__name__)


def build_delivery_workers(count: int | None = None) -> list[DeliveryWorker]:
    settings = get_settings()
    # Provider configuration errors surface at startup, not on the first claim.
    registry = build_provider_registry(settings)
    renderer = JinjaTemplateRenderer()
    policy = RetryPolicy.from_settings(settings)
    total = max(1, int(settings.delivery_worker_count if count is None else count))
    return [
        DeliveryWorker(
            registry=registry,
            session_factory=SessionLocal,
            renderer=renderer,
            policy=policy,
            name=f"delivery-worker-{index}",
        )
        for index in range(total)
    ]


_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _install_signal_handlers(stop_event: asyncio.Event) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # No signal support off the main thread or on Windows loops.
            logger.debug("signal handler unavailable signal=%s", sig)
            continue
        installed.append(sig)
    return installed


async def run_workers(stop_event: asyncio.Event | None = None) -> None:
    """Run one scheduler loop and the configured delivery loops until stopped."""
    if stop_event is None:
        stop_event = asyncio.Event()
    app_name = get_settings().app_name
    workers = build_delivery_workers()
    installed = _install_signal_handlers(stop_event)
    logger.info(
        "notification_workers_starting app=%s delivery_workers=%s channels=%s",
        app_name,
        len(workers),
        ",".join(workers[0].registry.channels()),
    )
    tasks = [asyncio.create_task(run_scheduler_loop(stop_event, session_factory=SessionLocal))]
    tasks.extend(asyncio.create_task(run_delivery_loop(worker, stop_event)) for worker in workers)
    try:
        await asyncio.gather(*tasks)
    finally:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)
    logger.info("notification_workers_stopped app=%s", app_name)
