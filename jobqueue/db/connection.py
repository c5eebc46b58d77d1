"""
Database connection management.
Handles async SQLAlchemy engine and session creation.

SQLite is the default backend. Every transaction on it starts with
BEGIN IMMEDIATE so that concurrent claimers in other processes serialize
on the database write lock instead of failing lock upgrades mid-transaction.
"""

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobqueue.config import get_settings
from jobqueue.db.models import Base
from jobqueue.exceptions import UnsupportedDatabaseError

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ("sqlite", "postgresql")

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def _install_sqlite_hooks(engine: AsyncEngine, busy_timeout_seconds: float) -> None:
    """
    Take over transaction control from the sqlite driver.

    Args:
        engine: The async engine to configure.
        busy_timeout_seconds: How long a statement waits on a locked database.
    """
    busy_timeout_ms = max(0, int(busy_timeout_seconds * 1000))

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        # Stop the driver from emitting its own deferred BEGIN
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(
    database_url: str | None = None,
    busy_timeout_seconds: float | None = None,
    echo: bool | None = None,
) -> AsyncEngine:
    """
    Create an async engine for the queue database.

    Args:
        database_url: SQLAlchemy URL. Defaults to the configured database_url.
        busy_timeout_seconds: SQLite lock wait bound. Defaults to settings.
        echo: Log SQL statements. Defaults to settings.

    Returns:
        AsyncEngine: The configured engine.

    Raises:
        UnsupportedDatabaseError: For backends other than SQLite/PostgreSQL,
            or an in-memory SQLite database.
    """
    settings = get_settings()
    url = make_url(database_url or settings.database_url)
    backend = url.get_backend_name()
    if backend not in SUPPORTED_BACKENDS:
        raise UnsupportedDatabaseError(f"unsupported database backend: {backend}")

    if busy_timeout_seconds is None:
        busy_timeout_seconds = settings.database_busy_timeout_seconds
    if echo is None:
        echo = settings.database_echo

    if backend == "sqlite":
        if url.database in (None, "", ":memory:"):
            raise UnsupportedDatabaseError(
                "in-memory sqlite cannot be shared between connections; use a file path"
            )
        engine = create_async_engine(
            url,
            echo=echo,
            connect_args={"timeout": busy_timeout_seconds},
        )
        _install_sqlite_hooks(engine, busy_timeout_seconds)
    else:
        engine = create_async_engine(url, echo=echo, pool_pre_ping=True)

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create a session factory bound to the engine.

    Args:
        engine: The async engine.

    Returns:
        async_sessionmaker: Factory producing sessions for single operations.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create the jobs and job_events tables if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def to_sync_url(database_url: str) -> str:
    """
    Convert an async driver URL to its synchronous equivalent.

    Alembic runs migrations through a blocking engine.

    Args:
        database_url: e.g. sqlite+aiosqlite:///./jobqueue.db

    Returns:
        The URL with the async driver replaced, e.g. sqlite:///./jobqueue.db
    """
    url: URL = make_url(database_url)
    drivers = {"aiosqlite": "sqlite", "asyncpg": "postgresql+psycopg"}
    driver = url.get_driver_name()
    if driver in drivers:
        url = url.set(drivername=drivers[driver])
    return url.render_as_string(hide_password=False)


def get_engine() -> AsyncEngine:
    """
    Get or create the process-wide async engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


async def init_db(create_schema: bool = True) -> None:
    """
    Initialize the database connection and session factory.
    Should be called on process startup.

    Args:
        create_schema: Create missing tables. Disable when Alembic owns the schema.
    """
    global AsyncSessionLocal
    engine = get_engine()
    if create_schema:
        await create_tables(engine)
    AsyncSessionLocal = create_session_factory(engine)
    logger.info("Database connection initialized", extra={"backend": engine.dialect.name})


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on process shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get the process-wide session factory.

    Raises:
        RuntimeError: If the database is not initialized.
    """
    if AsyncSessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return AsyncSessionLocal

