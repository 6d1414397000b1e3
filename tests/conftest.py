"""Shared fixtures for moondawg unit tests."""

from __future__ import annotations

import datetime as dt
import typing as typ

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from moondawg.store import init_storage
from tests.helpers.fakes import FakeClock, RecordingSleep

if typ.TYPE_CHECKING:
    from pathlib import Path


async def _setup_sqlite(tmp_path: Path) -> AsyncEngine:
    """Create a SQLite engine with the moondawg tables."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'moondawg_test.db'}"
    engine = create_async_engine(url)
    try:
        await init_storage(engine)
    except Exception:
        await engine.dispose()
        raise
    return engine


@pytest_asyncio.fixture
async def session_factory(
    tmp_path: Path,
) -> typ.AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Yield a fresh async session factory backed by sqlite."""
    engine = await _setup_sqlite(tmp_path)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    """Return a clock fixed at 2024-03-01T12:00Z."""
    return FakeClock(dt.datetime(2024, 3, 1, 12, 0, tzinfo=dt.UTC))


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    """Return a sleep stub that never waits."""
    return RecordingSleep()
