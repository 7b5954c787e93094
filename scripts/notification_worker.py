from __future__ import annotations

import asyncio

from notifyrelay.core.logging import configure_logging
from notifyrelay.workers.notification_worker import run_workers


async def _main() -> None:
    # Scheduler and delivery loops share one process and stop together on SIGINT/SIGTERM.
    configure_logging()
    await run_workers()


if __name__ == "__main__":
    asyncio.run(_main())
