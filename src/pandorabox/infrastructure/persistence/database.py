"""Async database session management (metadata cache)."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import event, make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pandorabox.infrastructure.persistence.models import Base

logger = logging.getLogger(__name__)


def is_memory_sqlite(url: str) -> bool:
    """Check if the URL points at an in-memory SQLite database."""
    if not url.startswith("sqlite"):
        return False
    database = make_url(url).database
    return not database or database == ":memory:"


# Yo, SQLite creates the DB file but NOT its directory. Default URLs point into ./data/, which
# doesn't exist on a fresh checkout, so make it before the first connect.
def ensure_sqlite_directory(url: str) -> None:
    """Create the parent directory of a file-backed SQLite database."""
    if not url.startswith("sqlite") or is_memory_sqlite(url):
        return
    database = make_url(url).database
    if database:
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


class Database:
    """Async database connection and session manager."""

    def __init__(self, url: str, echo: bool = False) -> None:
        """Initialize database.

        Args:
            url: Async SQLAlchemy URL, e.g. sqlite+aiosqlite:///./data/pandora_cache.db
            echo: Log every SQL statement
        """
        self.url = url

        engine_kwargs: dict[str, Any] = {"echo": echo}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": 30,  # Wait up to 30s for lock
            }
            # Hey future me - an in-memory SQLite DB lives and dies with ONE connection. Without
            # StaticPool every new session would see an empty database (tests!).
            if is_memory_sqlite(url):
                engine_kwargs["poolclass"] = StaticPool
            ensure_sqlite_directory(url)

        self._engine = create_async_engine(url, **engine_kwargs)

        if url.startswith("sqlite"):
            self._enable_sqlite_wal()

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    def _enable_sqlite_wal(self) -> None:
        """Switch file-backed SQLite to WAL so cache reads don't block on the purge sweep."""

        @event.listens_for(self._engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, _connection_record: Any) -> None:
            """Set SQLite pragmas on connection."""
            if is_memory_sqlite(self.url):
                return
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()
            logger.debug("Enabled WAL journal for SQLite connection")

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for database operations."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                # Rollback on any exception - re-raised for proper handling.
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        """Create all tables that don't exist yet."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close database connection."""
        await self._engine.dispose()
