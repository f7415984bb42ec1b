"""Database engine and session management."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from entitlement_engine.config import Settings
from entitlement_engine.database.models import Base

logger = structlog.get_logger()


def create_engine(app_settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database.

    Pool sizing only applies to server databases; SQLite files (local
    development and tests) use the default pool with a busy timeout so
    concurrent writers wait instead of failing.
    """
    url = app_settings.DATABASE_URL
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=app_settings.DB_ECHO,
            connect_args={"timeout": 30},
        )

    async_engine = create_async_engine(
        url,
        echo=app_settings.DB_ECHO,
        pool_pre_ping=True,
        pool_size=app_settings.DB_POOL_SIZE,
        max_overflow=app_settings.DB_POOL_MAX_OVERFLOW,
        pool_timeout=app_settings.DB_POOL_TIMEOUT,
        pool_recycle=app_settings.DB_POOL_RECYCLE,
    )
    _setup_pool_listeners(async_engine, app_settings.DB_POOL_MAX_OVERFLOW)
    return async_engine


def _setup_pool_listeners(async_engine: AsyncEngine, max_overflow: int) -> None:
    """Warn when the pool runs at capacity."""
    pool = async_engine.sync_engine.pool

    @event.listens_for(pool, "checkout")
    def _on_checkout(
        _dbapi_conn: object, _connection_record: object, _connection_proxy: object
    ) -> None:
        checked_out = pool.checkedout()  # type: ignore[attr-defined]
        pool_size = pool.size()  # type: ignore[attr-defined]
        if checked_out >= pool_size:
            logger.warning(
                "DB pool at capacity",
                checked_out=checked_out,
                pool_size=pool_size,
                overflow=pool.overflow(),  # type: ignore[attr-defined]
                max_overflow=max_overflow,
            )

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(
        _dbapi_conn: object, _connection_record: object, exception: Exception | None
    ) -> None:
        logger.warning(
            "DB connection invalidated",
            exception=str(exception) if exception else None,
        )


def create_session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory used by the entitlement store."""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(async_engine: AsyncEngine, environment: str) -> None:
    """Create tables in development/test; production relies on Alembic migrations."""
    logger.info("Initializing database connection", dialect=async_engine.dialect.name)

    if environment in ("development", "test"):
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/verified (development mode)")
    else:
        logger.info("Skipping create_all in production - Alembic manages schema")


async def close_database(async_engine: AsyncEngine) -> None:
    """Close database connection pool."""
    logger.info("Closing database connection pool")
    await async_engine.dispose()


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Run a unit of work in its own transaction.

    Usage:
        async with session_scope(factory) as db:
            ...
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
