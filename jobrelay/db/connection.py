"""
Database connection management.
Owns the async SQLAlchemy engine and session factory.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobrelay.config import Settings, get_settings
from jobrelay.db.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Async database handle.

    One instance per process, created by the composition root and passed to
    every component that persists state.
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 10,
        max_overflow: int = 20,
        echo: bool = False,
    ):
        """
        Initialize the database handle. No connection is opened until ``init``.

        Args:
            database_url: SQLAlchemy async URL.
            pool_size: Connection pool size (server databases only).
            max_overflow: Pool overflow (server databases only).
            echo: Log emitted SQL.
        """
        self.database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Database":
        """Build a handle from application settings."""
        settings = settings or get_settings()
        return cls(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            echo=settings.log_level == "DEBUG",
        )

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    async def init(self) -> None:
        """
        Create the engine and session factory.
        Should be called on application startup.
        """
        if self._engine is not None:
            return

        kwargs: dict = {"echo": self._echo}
        if not self.database_url.startswith("sqlite"):
            kwargs.update(
                pool_size=self._pool_size,
                max_overflow=self._max_overflow,
                pool_pre_ping=True,
            )
        self._engine = create_async_engine(self.database_url, **kwargs)
        self._sessionmaker = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database connection initialized")

    async def create_all(self) -> None:
        """Create missing tables. Used by tests and single-process deployments."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """
        Dispose of the engine.
        Should be called on application shutdown.
        """
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession]:
        """
        Context manager for a unit of work.
        Commits on success and rolls back on error.

        Yields:
            AsyncSession: An async database session.
        """
        if self._sessionmaker is None:
            raise RuntimeError("Database not initialized. Call init() first.")

        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
