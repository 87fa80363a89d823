"""Database session management and connection handling."""

import os
import logging
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from . import models

logger = logging.getLogger(__name__)

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./slip_payments.db"

# Hosted Postgres URLs come without a driver; sweeps and the API need asyncpg.
_ASYNC_DRIVER_PREFIXES = (
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)


def get_database_url() -> str:
    """Read ``DATABASE_URL``, upgrading plain Postgres URLs to asyncpg."""
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        return DEFAULT_DATABASE_URL
    for prefix, replacement in _ASYNC_DRIVER_PREFIXES:
        if db_url.startswith(prefix):
            return replacement + db_url[len(prefix):]
    return db_url


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine.

    Args:
        database_url: Database connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        pool_size: Number of connections to keep in the pool.
        max_overflow: Maximum overflow connections beyond pool_size.

    Returns:
        AsyncEngine instance.
    """
    url = database_url or get_database_url()

    # Use StaticPool for SQLite to maintain connection across async operations
    if "sqlite" in url:
        return sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )


def _make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_async_session_factory(
    engine: Optional[AsyncEngine] = None,
) -> async_sessionmaker[AsyncSession]:
    """
    Get a session factory for the given engine, or the global one.

    Args:
        engine: Optional engine. If None, uses the engine set up by init_db().

    Returns:
        async_sessionmaker instance.
    """
    if engine is not None:
        return _make_session_factory(engine)

    if _session_factory is None:
        raise RuntimeError(
            "Database not initialized. Call init_db() first."
        )
    return _session_factory


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)


async def init_db(
    database_url: Optional[str] = None,
    echo: bool = False,
    create_all: bool = True,
) -> AsyncEngine:
    """
    Initialize the database connection and optionally create tables.

    Args:
        database_url: Database connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        create_all: If True, create all tables defined in models.

    Returns:
        The global AsyncEngine.
    """
    global _engine, _session_factory

    logger.info("Initializing database connection...")

    _engine = create_async_engine(database_url, echo=echo)
    _session_factory = _make_session_factory(_engine)

    if create_all:
        await create_tables(_engine)
        logger.info("Database tables created successfully.")

    logger.info("Database initialized successfully.")
    return _engine


async def close_db() -> None:
    """Close the database connection and clean up resources."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("Database connection closed.")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency injection function for FastAPI.

    Yields:
        AsyncSession instance.

    Example:
        @app.get("/payments/{payment_id}")
        async def get_payment(payment_id: str, db: AsyncSession = Depends(get_db)):
            ...
    """
    session_factory = get_async_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session from the given factory, committing on success.

    Example:
        async with session_scope(factory) as db:
            slip = await db.get(Slip, slip_id)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_db_context():
    """Context manager for sessions on the global factory, outside FastAPI."""
    return session_scope(get_async_session_factory())
