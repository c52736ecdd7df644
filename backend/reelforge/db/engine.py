"""
Database engine configuration for reelforge.

Provides async SQLAlchemy engine with SQLite WAL mode,
crash-safe PRAGMA configuration, and session management.
"""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from reelforge.config import settings


def configure_sqlite_pragmas(dbapi_conn, connection_record):
    """
    Configure SQLite PRAGMA settings for crash safety and performance.

    - WAL mode: concurrent readers while the orchestrator writes
    - FULL synchronous: artifacts survive a crash mid-stage
    - Foreign keys: enable referential integrity
    - Busy timeout: gateway and watchdog writers wait up to 5s for locks
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


# Create async engine
engine = create_async_engine(
    settings.storage.database_url,
    echo=False,
)

# aiosqlite: listeners must be registered on the sync engine
event.listens_for(engine.sync_engine, "connect")(configure_sqlite_pragmas)

# expire_on_commit=False: attributes stay loaded after commit (no lazy IO)
async_session = async_sessionmaker(
    engine,
    expire_on_commit=False,
    class_=AsyncSession,
)


async def get_session():
    """
    Dependency injection function for async sessions.

    Yields an async session and ensures proper cleanup.
    """
    async with async_session() as session:
        yield session


async def shutdown():
    """Dispose of engine and close all connections."""
    await engine.dispose()
