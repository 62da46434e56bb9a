"""
Database layer — async SQL via SQLAlchemy 2.0 (asyncpg in production).

Provides:
    • Async engine and session factory builders
    • Base model for ORM entities
    • Table creation / disposal helpers

Engines are built explicitly and handed to the SQL stores; nothing here
opens a connection at import time, so several containers (e.g. parallel
test instances) can coexist.

Usage:
    from backend.app.core.database import create_engine, create_session_factory

    engine = create_engine(settings.DATABASE_URL)
    sessions = create_session_factory(engine)
    await init_db(engine)
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import Settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def create_engine(url: str, *, settings: Settings | None = None) -> AsyncEngine:
    """
    Build an async engine.

    Pool sizing only applies to server databases; SQLite (used in tests)
    rejects pool_size / max_overflow.
    """
    kwargs: Dict[str, Any] = {"future": True}
    if settings is not None:
        kwargs["echo"] = settings.DATABASE_ECHO
        if not url.startswith("sqlite"):
            kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
            kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
    return create_async_engine(url, **kwargs)


# ── Session Factory ──
def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Register ORM models on Base.metadata
    from backend.app.sos import orm  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def ping_db(engine: AsyncEngine) -> None:
    """Round-trip a trivial query; raises on connection failure."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
