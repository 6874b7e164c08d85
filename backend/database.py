"""Database setup and session management."""

import asyncio
import os
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _get_database_url() -> str:
    """Get the current database URL, respecting test overrides."""
    test_url = os.environ.get("TEST_DATABASE_URL")
    if test_url:
        return test_url
    return settings.database_url


def is_sqlite(url: str | None = None) -> bool:
    """Check if the given (or current) database URL is SQLite."""
    return "sqlite" in (url or _get_database_url())


# SQLite allows a single writer at a time. Network I/O of parallel runs stays
# concurrent; only the short commit sections are serialized through this lock.
db_write_lock = asyncio.Lock()


def casefold(value: str | None) -> str | None:
    return value.casefold() if value is not None else None


def _register_sqlite_functions(dbapi_connection, connection_record) -> None:
    # SQLite lower() only folds ASCII
    dbapi_connection.create_function("py_casefold", 1, casefold)


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine with backend-appropriate pool settings."""
    engine_kwargs: dict[str, Any] = {"echo": settings.debug}

    if is_sqlite(url):
        # NullPool gives every session its own connection; timeout waits on locks
        engine_kwargs["poolclass"] = NullPool
        engine_kwargs["connect_args"] = {"timeout": 60, "check_same_thread": False}
    else:
        engine_kwargs["pool_pre_ping"] = True

    engine = create_async_engine(url, **engine_kwargs)
    if is_sqlite(url):
        event.listen(engine.sync_engine, "connect", _register_sqlite_functions)
    return engine


engine = build_engine(_get_database_url())

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database sessions."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Initialize database tables."""
    # Import models so metadata is populated
    import models  # noqa: F401

    target = bind or engine
    async with target.begin() as conn:
        if is_sqlite(str(target.url)):
            # WAL lets readers proceed while a run is committing
            await conn.execute(text("PRAGMA journal_mode=WAL"))
            await conn.execute(text("PRAGMA busy_timeout=30000"))
        await conn.run_sync(Base.metadata.create_all)
