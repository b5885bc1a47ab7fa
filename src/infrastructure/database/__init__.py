"""
Database Infrastructure
=======================

Engine and session factory for the durable rule store.

PostgreSQL through asyncpg in deployment; aiosqlite URLs work for local
runs and the test suite. Repositories receive the session factory and open
one short transaction per operation via `session_scope`.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.config import settings


class Base(DeclarativeBase):
    """Declarative base for automation ORM models."""


_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Rule store engine is not initialized; call init_database() first")
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Session factory handed to SQLAlchemyRuleRepository."""
    if _session_maker is None:
        raise RuntimeError("Rule store sessions are not initialized; call init_database() first")
    return _session_maker


def _engine_options(url: str) -> Dict[str, Any]:
    options: Dict[str, Any] = {"echo": settings.debug}
    if url.startswith("sqlite"):
        return options
    options.update(
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )
    return options


def init_database(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Create the engine and session factory (once per process, at startup).

    Args:
        database_url: Overrides settings.database_url

    Returns:
        The new engine
    """
    global _engine, _session_maker

    # asyncpg spells the libpq sslmode option as ssl
    url = (database_url or settings.database_url).replace("sslmode=", "ssl=")

    _engine = create_async_engine(url, **_engine_options(url))
    _session_maker = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _engine


async def close_database() -> None:
    """Dispose pooled connections; safe to call when never initialized."""
    global _engine, _session_maker

    if _engine is None:
        return
    await _engine.dispose()
    _engine = None
    _session_maker = None


@asynccontextmanager
async def session_scope(
    session_maker: async_sessionmaker[AsyncSession]
) -> AsyncGenerator[AsyncSession, None]:
    """
    One transaction: commit when the block exits cleanly, roll back otherwise.

        async with session_scope(get_session_maker()) as session:
            await session.execute(update(AutomationRuleModel)...)
    """
    async with session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables() -> None:
    """Create missing tables. Schema changes in production go through migrations."""
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
