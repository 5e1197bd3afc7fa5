"""Async engine and session management for the insider wallet store.

PostgreSQL (asyncpg) is the deployment target; SQLite (aiosqlite) backs
local runs and the test suite. Sync URLs are rewritten to their async
drivers so one ``DATABASE_URL`` works for both alembic and the scanner.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from polymarket_insider_finder.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}

SQLITE_BUSY_TIMEOUT_MS = 5000


def to_async_url(database_url: str) -> str:
    """Rewrite a sync dialect URL to its async driver; other URLs pass through."""
    for sync_prefix, async_prefix in _ASYNC_DRIVERS.items():
        if database_url.startswith(sync_prefix):
            logger.warning("Database URL uses sync dialect %r; using %r", sync_prefix, async_prefix)
            return async_prefix + database_url[len(sync_prefix) :]
    return database_url


def _is_memory_sqlite(database_url: str) -> bool:
    return ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:")


def _install_sqlite_pragmas(engine: AsyncEngine, *, in_memory: bool) -> None:
    """Let concurrent shard writers wait on the file lock instead of failing at once."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode = WAL")
        cursor.close()


class DatabaseManager:
    """Owns the async engine and hands out transactional sessions."""

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
        **engine_kwargs: Any,
    ) -> None:
        """Initialize database manager.

        Args:
            database_url: Database connection URL.
            pool_size: Connection pool size (ignored for SQLite).
            max_overflow: Maximum overflow connections (ignored for SQLite).
            echo: Echo SQL statements for debugging.
            **engine_kwargs: Extra engine options (e.g. ``poolclass`` in tests).
        """
        self.database_url = to_async_url(database_url)
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self._engine_kwargs = engine_kwargs

        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            kwargs: dict[str, Any] = {"echo": self._echo, **self._engine_kwargs}
            if not self.is_sqlite:
                kwargs.setdefault("pool_size", self._pool_size)
                kwargs.setdefault("max_overflow", self._max_overflow)
                kwargs.setdefault("pool_pre_ping", True)
            self._engine = create_async_engine(self.database_url, **kwargs)
            if self.is_sqlite:
                _install_sqlite_pragmas(self._engine, in_memory=_is_memory_sqlite(self.database_url))
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """One unit of work: commits on clean exit, rolls back on error."""
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(bind=self.engine, expire_on_commit=False)

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init_schema_async(self) -> None:
        """Create any missing tables (alembic owns managed deployments)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Insider wallet schema ready (%d tables)", len(Base.metadata.tables))

    async def drop_schema_async(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.warning("Insider wallet schema dropped")

    async def dispose_async(self) -> None:
        """Dispose of all async database connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
        logger.info("Async database connections disposed")
