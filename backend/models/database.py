"""
Database connection and session management.

Uses SQLAlchemy async with a local connection pool. The engine is created
lazily on first use so that importing models never opens a connection.

Connection Pool Strategy:
- Port 6543 (external transaction pooler, e.g. pgbouncer): NullPool
- Anything else: local pool with pre-ping and periodic recycle
- Sessions are lightweight wrappers that checkout connections from the pool
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

# Ensure URL uses asyncpg driver
_db_url = settings.DATABASE_URL
if _db_url and "+asyncpg" not in _db_url:
    _db_url = _db_url.replace("postgresql://", "postgresql+asyncpg://")

_parsed_url = urlparse(_db_url) if _db_url else None
_db_port: int = _parsed_url.port if _parsed_url and _parsed_url.port else 5432
_use_null_pool: bool = _db_port == 6543

# Global singletons - created once, reused until disposed
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    """Get the database engine (singleton - created once, reused)."""
    global _engine
    if _engine is None:
        # Disable prepared statement cache for pgbouncer compatibility
        connect_args: dict[str, int] = {
            "statement_cache_size": 0,
            "prepared_statement_cache_size": 0,
        }

        if _use_null_pool:
            _engine = create_async_engine(
                _db_url,
                echo=False,
                future=True,
                poolclass=NullPool,
                connect_args=connect_args,
            )
            logger.info("Database engine created with NullPool (transaction mode, port %d)", _db_port)
        else:
            _engine = create_async_engine(
                _db_url,
                echo=False,
                future=True,
                pool_size=5,        # Base connections kept warm
                max_overflow=10,    # Up to 15 total under burst load
                pool_recycle=300,   # Recycle connections every 5 min
                pool_pre_ping=True, # Verify connection is alive before checkout
                connect_args=connect_args,
            )
            logger.info(
                "Database engine created with connection pool (port %d, "
                "pool_size=5, max_overflow=10)",
                _db_port,
            )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the async session factory (singleton - created once, reused)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,  # Don't auto-flush, we control when to commit
        )
        logger.info("Session factory created (will reuse pooled connections)")
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield an async database session.

    Usage:
        async with get_session() as session:
            result = await session.execute(query)
            await session.commit()  # Explicit commit if needed

    The session is automatically closed when the context exits.
    Any uncommitted changes are rolled back on error.
    """
    factory = get_session_factory()
    session: AsyncSession = factory()
    try:
        yield session
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def close_db() -> None:
    """
    Close the database engine and release all pooled connections.
    Call this on application shutdown.
    """
    global _engine, _session_factory
    if _engine is not None:
        pool_status = get_pool_status()
        logger.info(
            "Closing database pool: %d checked_in, %d checked_out",
            pool_status["checked_in"],
            pool_status["checked_out"]
        )
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database engine disposed, all connections closed")


def dispose_engine() -> None:
    """Drop the engine without awaiting (for forked Celery workers).

    Pooled asyncpg connections are bound to the event loop that created them,
    so a worker that starts a fresh loop must not reuse them.
    """
    global _engine, _session_factory
    if _engine is not None:
        _engine.sync_engine.dispose(close=False)
    _engine = None
    _session_factory = None


def get_pool_status() -> dict[str, int | str]:
    """Get current connection pool status for monitoring."""
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
