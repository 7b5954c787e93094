from __future__ import annotations

import asyncio

from notifyrelay.persistence.db import get_session
from notifyrelay.services.queue import queue_summary


async def summarize() -> None:
    async with get_session() as session:
        summary = await queue_summary(session)
    for status, count in summary.items():
        print(f"jobs_{status}={count}")


if __name__ == "__main__":
    asyncio.run(summarize())
