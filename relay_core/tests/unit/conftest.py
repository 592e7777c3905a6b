"""Shared fixtures for relay_core unit tests.

The state store runs on a file-backed SQLite database in ``tmp_path`` so
several sessions can see each other's committed rows.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest_asyncio
from relay_core.state.sqlite_adapter import create_local_tables, get_local_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    eng = get_local_engine(tmp_path / "state.db")
    await create_local_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as sess:
        yield sess
