from __future__ import annotations

import os

# Settings are cached on first use, so the test environment must be set before any import.
os.environ.setdefault("SYNC_EXECUTION_MODE", "inline")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("OAUTH_CLIENT_ID", "test-client")
os.environ.setdefault("OAUTH_CLIENT_SECRET", "test-secret")
os.environ.setdefault("OAUTH_REDIRECT_URI", "https://app.example.test/oauth/callback")
os.environ.setdefault("SYNC_RETRY_BACKOFF_S", "0")
os.environ.setdefault("EXT_RETRY_BACKOFF_MS", "1")
os.environ.setdefault("SYNC_PEOPLE_FETCH_CONCURRENCY", "2")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from rostersync.core.config import get_settings
from rostersync.domain.models import Base
from rostersync.services.integrations import locks
from rostersync.services.telemetry import reset_telemetry


@pytest.fixture
async def session_factory(tmp_path):
    # A throwaway SQLite file per test keeps runs isolated without a Postgres server.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rostersync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Counters, local locks and cached settings must not leak between tests.
    reset_telemetry()
    locks._local_owners.clear()
    yield
    locks._local_owners.clear()
    get_settings.cache_clear()
