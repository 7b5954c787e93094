from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.domain.models import NotificationTemplate


async def get_template_by_key(session: AsyncSession, key: str) -> NotificationTemplate | None:
    result = await session.execute(
        select(NotificationTemplate).where(NotificationTemplate.key == key)
    )
    return result.scalar_one_or_none()
