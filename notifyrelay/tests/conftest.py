from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from notifyrelay.core.config import get_settings
from notifyrelay.domain.models import NotificationTemplate
from notifyrelay.persistence.db import create_schema


@pytest.fixture(autouse=True)
def notifyrelay_settings(monkeypatch):
    # SQLite has no SKIP LOCKED, so tests opt into the guarded fallback claim.
    monkeypatch.setenv("QUEUE_ALLOW_UNSAFE_CLAIM", "true")
    monkeypatch.setenv("RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("RETRY_BASE_BACKOFF_S", "30")
    monkeypatch.setenv("RETRY_MAX_BACKOFF_S", "3600")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
async def db_engine(tmp_path):
    # File-backed so separate sessions get separate connections, like real workers.
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'notifyrelay.db'}",
        connect_args={"timeout": 15},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as db_session:
        yield db_session


@pytest.fixture
def now() -> datetime:
    return datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def add_template(session_factory):
    async def _add(key: str, *, subject: str, body: str) -> None:
        async with session_factory() as db_session:
            db_session.add(
                NotificationTemplate(
                    id=uuid4().hex,
                    key=key,
                    subject=subject,
                    body=body,
                    created_at=datetime.now(timezone.utc),
                )
            )
            await db_session.commit()

    return _add
