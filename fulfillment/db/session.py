"""
Async SQLAlchemy engine and session factories.

The API process shares the module-level `AsyncSessionLocal`. The payments
worker builds its own engine with `build_session_maker()` so it can dispose
it on shutdown.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fulfillment.core.config import get_settings

SessionMaker = async_sessionmaker[AsyncSession]


def build_session_maker(dsn: str) -> tuple[AsyncEngine, SessionMaker]:
    """Create an engine and a session factory bound to it."""
    engine = create_async_engine(dsn, pool_pre_ping=True)
    return engine, async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


engine, AsyncSessionLocal = build_session_maker(get_settings().database_dsn)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session."""
    async with AsyncSessionLocal() as session:
        yield session
