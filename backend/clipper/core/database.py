"""Datastore client.

A :class:`Database` is constructed once per process (CLI daemon, API app,
Celery task invocation), injected into the components that need it and
disposed on shutdown.  Nothing in the package keeps an implicit module-level
engine.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Request
from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from clipper.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# JSONB on PostgreSQL, plain JSON on every other dialect (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Database:
    """Owns one async engine and its session factory."""

    def __init__(self, url: str | None, *, echo: bool = False) -> None:
        if not url:
            raise ConfigurationError("DATABASE_URL is not configured")

        engine_kwargs: dict[str, Any] = {"echo": echo}
        if not url.startswith("sqlite"):
            engine_kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)

        self.url = url
        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def session(self) -> AsyncSession:
        """Return a new ``AsyncSession``; the caller owns its lifetime."""
        return self.session_factory()

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[AsyncSession]:
        """Yield a session inside a transaction that commits on exit."""
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def create_all(self) -> None:
        # Import for the side effect of registering the tables on Base.metadata
        import clipper.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database connections closed")


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a session bound to the app's ``Database``."""
    db: Database = request.app.state.db
    async with db.session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
