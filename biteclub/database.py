"""
Database Connection Module
Owns the SQLAlchemy async engine and session factory.

The process entry point (FastAPI lifespan, Celery task) constructs one
``Database`` and passes it to every service; nothing here is a global.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


# Base class for all our models
class Base(DeclarativeBase):
    pass


class Database:
    """
    Storage handle shared by the services of one process.

    Attributes:
        engine: Async engine bound to ``url``
        session_maker: Factory producing ``AsyncSession`` objects
    """

    def __init__(
        self,
        url: str,
        echo: bool = False,
        engine: Optional[AsyncEngine] = None,
        **engine_kwargs,
    ):
        if engine is None:
            if url.startswith("postgresql"):
                engine_kwargs.setdefault("pool_size", 5)
                engine_kwargs.setdefault("max_overflow", 10)
            engine = create_async_engine(url, echo=echo, **engine_kwargs)

        self.url = url
        self.engine = engine
        self.session_maker = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,  # Objects remain accessible after commit
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Plain session; the caller decides when to commit."""
        async with self.session_maker() as session:
            yield session

    @asynccontextmanager
    async def transaction(self, joined: Optional[AsyncSession] = None) -> AsyncIterator[AsyncSession]:
        """
        Session wrapped in a transaction.

        Commits when the block exits normally and rolls back on any
        exception, so a failed operation leaves no partial writes.
        Passing ``joined`` runs the block inside that session's open
        transaction instead; its owner commits.
        """
        if joined is not None:
            yield joined
            return
        async with self.session_maker() as session:
            async with session.begin():
                yield session

    async def create_all(self) -> None:
        """Create all tables. Called once at application startup."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def dispose(self) -> None:
        await self.engine.dispose()

