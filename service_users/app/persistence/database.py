"""
Async database engine and session management for the Users service.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shared.errors import AccessLayerException
from shared.logging import get_logger
from .models import Base


class Database:
    """Owns the SQLAlchemy engine and hands out one session per unit of work.

    Usage:
        database = Database("sqlite+aiosqlite:///users.db")
        await database.initialize()

        async with database.session() as session:
            ...

        await database.close()
    """

    def __init__(self, database_url: str, *, echo: bool = False, create_tables: bool = True):
        self.database_url = database_url
        self.echo = echo
        self.create_tables = create_tables
        self.logger = get_logger("users.persistence.database")
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise AccessLayerException("DATABASE_NOT_STARTED", "Database has not been initialized")
        return self._engine

    async def initialize(self) -> None:
        """Create the engine and, when configured, the schema.

        Calling it more than once is safe.
        """
        if self._engine is None:
            kwargs = {"echo": self.echo}
            if self.database_url.startswith("sqlite") and ":memory:" in self.database_url:
                # One shared connection, otherwise every checkout sees an empty database
                kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})

            try:
                self._engine = create_async_engine(self.database_url, **kwargs)
            except Exception as e:
                self.logger.error("Failed to create database engine", error=str(e))
                raise AccessLayerException("DATABASE_START_FAILED", str(e))

            self._sessionmaker = async_sessionmaker(self._engine, expire_on_commit=False)

        if self.create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized", create_tables=self.create_tables)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session; uncommitted work is rolled back on exit."""
        if self._sessionmaker is None:
            raise AccessLayerException("DATABASE_NOT_STARTED", "Database has not been initialized")

        async with self._sessionmaker() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            self.logger.info("Database closed")

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception:
            return False
