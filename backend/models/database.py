"""
Database engine and session management.

Every store takes a session factory so tests can hand in fakes; the default
is :func:`get_session` below.  Schema changes go through Alembic
(``db/migrations``), never ``create_all``.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def _async_url(url: str) -> str:
    if url and "+asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://")
    return url


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Engine singleton, created on first use."""
    global _engine
    if _engine is None:
        url = _async_url(settings.DATABASE_URL)
        # pgbouncer in transaction mode cannot keep prepared statements
        connect_args: dict[str, int] = {"statement_cache_size": 0, "prepared_statement_cache_size": 0}

        if settings.DATABASE_POOL_SIZE <= 0:
            _engine = create_async_engine(url, poolclass=NullPool, connect_args=connect_args)
            logger.info("Database engine created without local pooling")
        else:
            _engine = create_async_engine(
                url,
                pool_size=settings.DATABASE_POOL_SIZE,
                max_overflow=settings.DATABASE_MAX_OVERFLOW,
                pool_recycle=300,
                pool_pre_ping=True,
                connect_args=connect_args,
            )
            logger.info(
                "Database engine created (pool_size=%d, max_overflow=%d)",
                settings.DATABASE_POOL_SIZE,
                settings.DATABASE_MAX_OVERFLOW,
            )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(), class_=AsyncSession, expire_on_commit=False, autoflush=False
        )
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a session; uncommitted work is rolled back if the block raises.

    Usage:
        async with get_session() as session:
            await session.execute(stmt)
            await session.commit()
    """
    session: AsyncSession = get_session_factory()()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_db() -> None:
    """Dispose the engine on application shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed, all connections closed")


def dispose_engine() -> None:
    """Drop the engine without awaiting (for Celery workers switching event loops).

    Pooled asyncpg connections are bound to the loop that created them, so a
    fresh loop needs a fresh engine.
    """
    global _engine, _session_factory
    if _engine is not None:
        _engine.sync_engine.dispose(close=False)
        _engine = None
        _session_factory = None


def get_pool_status() -> dict[str, int | str]:
    """Connection pool counters for /health/db."""
    if _engine is None:
        return {"pool_type": "not_initialized", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    pool = _engine.pool
    if isinstance(pool, NullPool):
        return {"pool_type": "NullPool", "pool_size": 0, "checked_in": 0, "checked_out": 0, "overflow": 0}

    return {
        "pool_type": type(pool).__name__,
        "pool_size": pool.size(),
        "checked_in": pool.checkedin(),
        "checked_out": pool.checkedout(),
        "overflow": pool.overflow(),
    }
