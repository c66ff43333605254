"""Database connection management for HookChat.

Engines and session factories are created explicitly and handed to the
services that need them; nothing here is a process-wide singleton.

Usage:
    from hookchat.db.connection import (
        async_init_db, create_engine_for_url, create_session_factory,
        get_async_database_url,
    )

    engine = create_engine_for_url(get_async_database_url())
    await async_init_db(engine)
    session_factory = create_session_factory(engine)

    async with get_async_db_context(session_factory) as db:
        result = await db.execute(select(Agent))
"""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from hookchat.db.models import Base
from hookchat.errors import PersistenceError

logger = logging.getLogger(__name__)


# Configuration
def get_database_url(configured_url: str | None = None) -> str:
    """Get database URL from config, environment, or default SQLite.

    Precedence:
    1. configured_url (``database.url`` from hookchat.yaml)
    2. DATABASE_URL
    3. HOOKCHAT_DB_PATH (converted to sqlite URL)
    4. sqlite:///<user data dir>/hookchat.db
    """
    if configured_url:
        return configured_url

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("HOOKCHAT_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from hookchat.utils.paths import get_default_db_path, ensure_dirs_exist

    ensure_dirs_exist()
    return f"sqlite:///{get_default_db_path()}"


def get_async_database_url(configured_url: str | None = None) -> str:
    """Get async database URL, deriving it from the sync URL.

    Converts sqlite:/// to sqlite+aiosqlite:/// for async support.
    """
    url = get_database_url(configured_url)
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "sqlite+aiosqlite:///")
    return url


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: ON DELETE CASCADE from messages to attachments.
    - journal_mode=WAL: concurrent readers with a single writer.
    - synchronous=NORMAL: durable after WAL fsync.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.close()


def create_engine_for_url(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine, installing SQLite pragmas when applicable.

    Args:
        url: Async database URL (e.g. sqlite+aiosqlite:///path.db).
        **kwargs: Extra keyword arguments for create_async_engine.

    Returns:
        Configured AsyncEngine.
    """
    engine = create_async_engine(
        url,
        echo=os.environ.get("SQL_ECHO", "").lower() == "true",
        **kwargs,
    )
    if url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragma)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory used by ChatStore."""
    return async_sessionmaker(
        autoflush=False,
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@asynccontextmanager
async def get_async_db_context(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Transaction scope: commit on success, roll back and raise on failure.

    SQLAlchemy failures are re-raised as PersistenceError so callers never
    need to know about the ORM.

    Usage:
        async with get_async_db_context(factory) as db:
            db.add(agent)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("Database transaction failed: %s", e)
            raise PersistenceError.from_code("E-4001", reason=str(e)) from e
        except BaseException:
            await session.rollback()
            raise


# Initialization functions


async def async_init_db(engine: AsyncEngine) -> None:
    """Create all database tables asynchronously.

    Safe to call multiple times - will not recreate existing tables.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("Database schema ensured for %s", engine.url)


async def close_async_db(engine: AsyncEngine) -> None:
    """Close the async engine and dispose of connection pool."""
    await engine.dispose()
