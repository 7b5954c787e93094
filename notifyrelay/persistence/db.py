from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from notifyrelay.core.config import get_settings
from notifyrelay.domain.models import Base


# Dialects that implement SELECT ... FOR UPDATE SKIP LOCKED.
_SKIP_LOCKED_DIALECTS = frozenset({"postgresql", "mysql", "mariadb", "oracle"})


def build_engine(database_url: str) -> AsyncEngine:
    settings = get_settings()
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools for predictable latency under load.
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
        if settings.db_statement_timeout_ms > 0 and database_url.startswith("postgresql+asyncpg"):
            engine_kwargs["connect_args"] = {
                "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
            }
    return create_async_engine(database_url, **engine_kwargs)


settings = get_settings()
engine = build_engine(settings.database_url)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def supports_skip_locked(session: AsyncSession) -> bool:
    # Capability probe for the locked claim path; decided by the bound dialect.
    return session.get_bind().dialect.name in _SKIP_LOCKED_DIALECTS


async def create_schema(target: AsyncEngine | None = None) -> None:
    # Dev/test helper; production schemas come from Alembic revisions.
    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
