"""Database connection and session management."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from taskbroker.config import settings

SQLITE_BUSY_TIMEOUT_MS = 30_000


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


def _is_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite")


def _attach_sqlite_pragmas(target_engine: AsyncEngine) -> None:
    """Enable foreign keys and a busy timeout on every SQLite connection."""
    sync_engine = target_engine.sync_engine
    if getattr(sync_engine, "_taskbroker_pragmas_attached", False):
        return

    @event.listens_for(sync_engine, "connect")
    def set_sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()

    sync_engine._taskbroker_pragmas_attached = True


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine tuned for the given backend."""
    if _is_sqlite(database_url):
        new_engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT_MS / 1000},
        )
        _attach_sqlite_pragmas(new_engine)
        return new_engine

    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=20,
        max_overflow=10,
    )


def create_session_factory(target_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        target_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Process-wide engine and session factory
engine = create_engine(settings.async_database_url, echo=settings.debug)
async_session_factory = create_session_factory(engine)


async def init_db(target_engine: AsyncEngine | None = None) -> None:
    """Initialize database tables."""
    # Register table metadata
    import taskbroker.db.tables  # noqa: F401

    async with (target_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(target_engine: AsyncEngine | None = None) -> None:
    """Close database connections."""
    await (target_engine or engine).dispose()


@asynccontextmanager
async def get_session(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Get a database session that commits on success and rolls back on error."""
    async with (session_factory or async_session_factory)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
