from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from notifyrelay.domain.models import AuditLog


async def list_events(
    session: AsyncSession,
    *,
    notification_id: str | None = None,
    action: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLog]:
    stmt = select(AuditLog)
    if notification_id:
        stmt = stmt.where(AuditLog.notification_id == notification_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    if occurred_from:
        stmt = stmt.where(AuditLog.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditLog.occurred_at <= occurred_to)

    # Oldest first so a notification's lifecycle reads top to bottom.
    stmt = stmt.order_by(AuditLog.occurred_at.asc(), AuditLog.id.asc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
