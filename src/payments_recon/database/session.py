"""Engine and session handling for the reconciliation database."""

import os
import logging
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from . import models

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./reconciliation.db"


def get_database_url() -> str:
    """
    Resolve the database URL from ``DATABASE_URL``.

    Plain PostgreSQL URLs are rewritten to the asyncpg driver. Without the
    variable a local SQLite file is used.
    """
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        return DEFAULT_DATABASE_URL
    for prefix in ("postgresql://", "postgres://"):
        if db_url.startswith(prefix):
            return "postgresql+asyncpg://" + db_url[len(prefix):]
    return db_url


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create an async engine for the run store, guard and app ledger.

    Args:
        database_url: Connection URL. Defaults to get_database_url().
        echo: Log every SQL statement.
        pool_size: Pooled connections (server databases only).
        max_overflow: Extra connections beyond pool_size.

    Returns:
        AsyncEngine instance.
    """
    url = database_url or get_database_url()

    if url.startswith("sqlite"):
        # One shared connection so in-memory databases survive between sessions
        engine = sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        # SQLite only honours ON DELETE CASCADE with foreign keys enabled
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )


def get_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to an engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


class DatabaseManager:
    """
    Owns the engine and session factory for one application instance.

    Example:
        db_manager = DatabaseManager()
        await db_manager.initialize()

        service = create_reconciliation_service(db_manager.session_factory)

        async with db_manager.session() as session:
            payments = await PaymentRepository(session).list_for_period(start, end)

        await db_manager.shutdown()
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
    ):
        self.database_url = database_url
        self.echo = echo
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    async def initialize(self, create_tables: bool = True) -> None:
        """Open the engine and optionally create missing tables."""
        logger.info("Initializing reconciliation database")
        self._engine = create_async_engine(
            self.database_url,
            self.echo,
            self.pool_size,
            self.max_overflow,
        )
        self._session_factory = get_async_session_factory(self._engine)

        if create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(models.Base.metadata.create_all)
            logger.info("Database tables created")

    async def shutdown(self) -> None:
        """Dispose of the engine."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory for components that manage their own sessions."""
        if self._session_factory is None:
            raise RuntimeError(
                "DatabaseManager not initialized. Call initialize() first."
            )
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session committed on success and rolled back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
