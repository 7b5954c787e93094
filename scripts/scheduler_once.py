from __future__ import annotations

import asyncio

from notifyrelay.core.logging import configure_logging
from notifyrelay.persistence.db import SessionLocal
from notifyrelay.services.scheduler import promote_due_notifications


async def promote() -> None:
    # Single promotion pass for cron-driven deployments without a resident scheduler.
    configure_logging()
    async with SessionLocal() as session:
        promoted = await promote_due_notifications(session)
    print(f"promoted={len(promoted)}")


if __name__ == "__main__":
    asyncio.run(promote())
