"""
SQLAlchemy async engine, session factory and declarative base.
PostgreSQL (asyncpg) in production; SQLite (aiosqlite) is accepted for tests.
"""

from typing import AsyncIterator

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from aves.config import settings

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # aiosqlite connections are bound to the loop that opened them
        return {"echo": settings.DB_ECHO, "poolclass": NullPool}
    return {
        "echo": settings.DB_ECHO,
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,
    }


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db() -> None:
    """Create all tables that do not exist yet."""
    # Import for side effect: registers the mappers on Base.metadata
    from aves.models import tables  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialised", tables=sorted(Base.metadata.tables))


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a database session for dependency injection."""
    async with async_session_factory() as session:
        yield session


async def close_db() -> None:
    """Dispose of the connection pool."""
    await engine.dispose()
