"""Database connection and session management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from tourney.config import Settings
from tourney.models import Base

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Create the async engine.

    SQLite (tests, local runs) gets NullPool; other backends get a sized pool.
    """
    if settings.is_sqlite:
        return create_async_engine(
            settings.database_url,
            poolclass=NullPool,
            echo=settings.app_debug,
            connect_args={"timeout": 30},
        )

    return create_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
        echo=settings.app_debug,
    )


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Session factory shared by all engine components."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    session_factory: SessionFactory,
) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on success, rollback on error.

    Usage:
        async with session_scope(factory) as session:
            session.add(obj)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (tests and local runs; production uses alembic)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def close_db(engine: AsyncEngine) -> None:
    """Close database connection pool."""
    await engine.dispose()
