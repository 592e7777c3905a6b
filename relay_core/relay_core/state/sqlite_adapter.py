"""SQLite adapter for local-only operation.

Provides an async SQLAlchemy engine backed by ``aiosqlite`` that uses the
same ORM table definitions as the PostgreSQL backend, so the API and the
invalidation relay can run without external services.

Differences from the PostgreSQL backend:

* No connection pooling (SQLite is single-writer).
* Tables are created with ``create_all`` instead of Alembic.
* JSONB columns fall back to SQLite's JSON (stored as TEXT).
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)


def get_local_engine(
    db_path: Path | str = ".posrelay/state.db",
) -> AsyncEngine:
    """Create an async SQLAlchemy engine backed by SQLite via aiosqlite.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Parent directories are
        created automatically.  Use ``:memory:`` for an ephemeral
        in-memory database.
    """
    db_path = Path(db_path) if db_path != ":memory:" else db_path

    if isinstance(db_path, Path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{db_path}"
    else:
        url = "sqlite+aiosqlite:///:memory:"

    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all ORM tables; idempotent and safe to call on every startup."""
    from relay_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("SQLite tables created/verified")
