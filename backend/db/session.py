"""
HomeOps Database Session Management

Async SQLAlchemy engine and session factory, owned by an explicit
``Database`` object with an initialize/shutdown lifecycle so the engine
can run against any store (PostgreSQL in production, SQLite in tests).
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import Settings, get_settings

logger = structlog.get_logger()


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


class Database:
    """Engine + session factory with explicit lifecycle."""

    def __init__(self, settings: Settings | None = None, engine: AsyncEngine | None = None):
        self.settings = settings or get_settings()
        self._engine = engine
        self._sessionmaker: async_sessionmaker[AsyncSession] | None = None
        if engine is not None:
            self._sessionmaker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @property
    def is_initialized(self) -> bool:
        return self._sessionmaker is not None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not initialized")
        return self._engine

    async def initialize(self) -> None:
        if self.is_initialized:
            return
        url = self.settings.database_url
        kwargs: dict = {"echo": self.settings.database_echo, "pool_pre_ping": True}
        if not url.startswith("sqlite"):
            kwargs["pool_size"] = self.settings.database_pool_size
            kwargs["max_overflow"] = self.settings.database_max_overflow
        self._engine = create_async_engine(url, **kwargs)
        self._sessionmaker = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        logger.info("database.initialized", dialect=self._engine.dialect.name)

    async def shutdown(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            logger.info("database.shutdown")
        self._engine = None
        self._sessionmaker = None

    async def create_all(self) -> None:
        """Create any missing tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not initialized")
        async with self._sessionmaker() as session:
            yield session


@asynccontextmanager
async def transactional(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Commit on normal exit, roll back on any exception and re-raise."""
    try:
        yield db
        await db.commit()
    except Exception:
        await db.rollback()
        raise


_database: Database | None = None


def get_database() -> Database:
    """Process-wide Database used by the API layer."""
    global _database
    if _database is None:
        _database = Database()
    return _database
