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

from app.config import settings


def async_url(url: str) -> str:
    """Point a plain ``postgresql://`` URL at the asyncpg driver."""
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url.removeprefix("postgresql://")
    return url


def create_engine_for(url: str, **kwargs: Any) -> AsyncEngine:
    """
    Async engine whose sessions run in UTC.

    Appointment instants are ``timestamptz``. Local calendar dates are taken
    with an explicit ``timezone(centre_tz, ...)``, never from the session zone.
    """
    return create_async_engine(
        async_url(url),
        connect_args={
            "server_settings": {
                "application_name": settings.app_name,
                "timezone": "UTC",
            },
        },
        **kwargs,
    )


DATABASE_URL = async_url(settings.database_url)

engine: AsyncEngine = create_engine_for(
    settings.database_url,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_recycle=3600,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; the repository owns commit boundaries."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def check_database_connection() -> bool:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False
