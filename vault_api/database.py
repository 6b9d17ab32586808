"""
Database Connection Management
==============================

Async engine and session management for the record and metadata tables.
One Database instance is created per application and passed to whoever
needs it.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from vault_api.config import Settings
from vault_api.db_models import Base


logger = logging.getLogger(__name__)


def create_engine_for(settings: Settings) -> AsyncEngine:
    kwargs = {"echo": settings.database_echo}
    if not settings.database_url.startswith("sqlite"):
        kwargs.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,
        )
    return create_async_engine(settings.database_url, **kwargs)


class Database:
    """
    Owns the async engine and session factory.

    Usage:
        db = Database(settings)
        await db.create_all()
        async with db.transaction() as session:
            session.add(row)
    """

    def __init__(self, settings: Settings, engine: AsyncEngine = None):
        self.engine = engine or create_engine_for(settings)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def create_all(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ready")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Session with commit on success and rollback on error.

        Usage:
            async with db.session() as session:
                result = await session.execute(query)
        """
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Explicit transaction; commits on success, rolls back on exception."""
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1

    async def close(self):
        await self.engine.dispose()
        logger.info("Database connection pool closed")
