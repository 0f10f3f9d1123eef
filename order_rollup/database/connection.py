"""
Database Connection Management

Async database engine and session factory with SQLAlchemy 2.0.
Implements connection setup, health checks, and graceful shutdown.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from order_rollup.config import get_settings
from order_rollup.database.models import Base
from order_rollup.exceptions import StoreUnavailable

logger = structlog.get_logger(__name__)

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


async def init_database(url: Optional[str] = None, create_schema: bool = False) -> AsyncEngine:
    """
    Initialize the database engine.
    
    Args:
        url: Database URL, defaults to the configured one
        create_schema: Create missing tables after connecting
    
    Returns:
        AsyncEngine: The initialized database engine
    """
    global _engine, _async_session_factory
    
    if _engine is not None:
        logger.warning("Database already initialized")
        return _engine
    
    settings = get_settings()
    
    # AsyncPG handles its own connection pooling internally
    _engine = create_async_engine(
        url or settings.database.async_url,
        echo=settings.database.echo,
        pool_pre_ping=True,
        poolclass=NullPool,
        connect_args={"timeout": settings.database.connect_timeout},
    )
    
    _async_session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    
    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if create_schema:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Database connection established", schema_created=create_schema)
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        await close_database()
        raise StoreUnavailable(f"Database unreachable: {e}") from e
    
    return _engine


async def close_database() -> None:
    """Dispose of the engine and its connections."""
    global _engine, _async_session_factory
    
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connection pool closed")


def get_engine() -> AsyncEngine:
    """
    Get the database engine.
    
    Raises:
        StoreUnavailable: If database is not initialized
    """
    if _engine is None:
        raise StoreUnavailable("Database not initialized. Call init_database() first.")
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory of the initialized database."""
    if _async_session_factory is None:
        raise StoreUnavailable("Database not initialized. Call init_database() first.")
    return _async_session_factory


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Get a database session.
    
    Context manager that provides a database session and handles
    commit/rollback/close automatically.
    
    Example:
        async with get_db() as db:
            result = await db.execute(query)
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error("Database session error, rolling back", error=str(e), error_type=type(e).__name__)
        await session.rollback()
        raise
    finally:
        await session.close()


async def check_database_health() -> dict:
    """
    Check database health status.
    
    Returns:
        dict: Health status with latency information
    """
    import time
    
    try:
        start = time.perf_counter()
        async with get_db() as db:
            await db.execute(text("SELECT 1"))
        latency_ms = (time.perf_counter() - start) * 1000
        
        return {
            "status": "healthy",
            "latency_ms": round(latency_ms, 2),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }
