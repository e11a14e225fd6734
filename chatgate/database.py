"""Database connection management for chatgate.

This module builds the async engine and session maker used by the account
store. Nothing here is global: the application lifespan owns the engine and
hands the session maker to the store.
"""

import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

# Register table models on SQLModel.metadata
from chatgate import models  # noqa: F401

logger = logging.getLogger(__name__)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create the async database engine.

    In-memory SQLite shares a single connection so every session sees the
    same database.

    Args:
        database_url: Async SQLAlchemy URL (postgresql+asyncpg://, sqlite+aiosqlite://)
        echo: Log emitted SQL

    Returns:
        AsyncEngine: Database engine
    """
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url:
            return create_async_engine(
                database_url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_async_engine(database_url, echo=echo)

    logger.info("Creating database engine...")
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,  # Verify connections before using
    )


def create_session_maker(engine: AsyncEngine) -> sessionmaker:
    """Create the async session factory bound to ``engine``."""
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_db_and_tables(engine: AsyncEngine) -> None:
    """Create database tables if they don't exist.

    Should be called on application startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database tables created/verified")


async def close_db_connection(engine: AsyncEngine) -> None:
    """Close database connection pool.

    Should be called on application shutdown.
    """
    await engine.dispose()
    logger.info("Database connection pool closed")


async def check_database_connection(session_maker: sessionmaker) -> bool:
    """Check if database connection is alive.

    Returns:
        bool: True if database is reachable, False otherwise

    Example:
        >>> is_healthy = await check_database_connection(session_maker)
        >>> print(f"Database: {'healthy' if is_healthy else 'unhealthy'}")
    """
    try:
        async with session_maker() as session:
            await session.execute(text("SELECT 1"))
            return True
    except Exception as e:  # noqa: BLE001
        logger.error(f"Database health check failed: {e}")
        return False
