"""Database configuration and connection management."""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from chroniccare.config import settings


def build_async_url(url: str) -> str:
    """Convert a sync PostgreSQL URL to the asyncpg driver."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine_for(url: str) -> AsyncEngine:
    """
    Create an async engine, applying pool settings only for PostgreSQL.

    Args:
        url: Database URL (sync or async form)

    Returns:
        Configured async engine
    """
    async_url = build_async_url(url)
    options: dict[str, Any] = {"echo": settings.debug, "pool_pre_ping": True}

    if async_url.startswith("postgresql+asyncpg://"):
        options.update(
            pool_size=10,
            max_overflow=20,
            pool_recycle=3600,
            connect_args={
                "server_settings": {
                    "application_name": settings.app_name,
                },
            },
        )

    return create_async_engine(async_url, **options)


engine: AsyncEngine = create_engine_for(settings.database_url)

# Async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async database sessions."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def check_database_connection() -> bool:
    """Check if database connection is healthy."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
