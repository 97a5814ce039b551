"""
Database engine configuration for contipipe.

Provides async SQLAlchemy engine construction with SQLite WAL mode,
crash-safe PRAGMA configuration, and session factories. Engines are built
once at process start and passed to the stores that need them.
"""
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool


def configure_sqlite_pragmas(dbapi_conn, connection_record):
    """
    Configure SQLite PRAGMA settings for crash safety and concurrency.

    - WAL mode: Write-Ahead Logging so readers never block the CAS writer
    - FULL synchronous: Maximum crash safety
    - Foreign keys: Enable referential integrity
    - Busy timeout: Wait up to 5s for locks
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL.

    In-memory SQLite URLs share a single connection (StaticPool) so every
    session sees the same database.
    """
    is_sqlite = database_url.startswith("sqlite")
    kwargs: dict = {"echo": echo}
    if is_sqlite and (":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:")):
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}

    engine = create_async_engine(database_url, **kwargs)

    if is_sqlite:
        # CRITICAL: Use engine.sync_engine for aiosqlite compatibility
        event.listens_for(engine.sync_engine, "connect")(configure_sqlite_pragmas)

    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # CRITICAL: expire_on_commit=False prevents greenlet errors on attribute access
    return async_sessionmaker(
        engine,
        expire_on_commit=False,
        class_=AsyncSession,
    )


def shares_connection(engine: AsyncEngine) -> bool:
    """True when every session runs on the same DBAPI connection.

    Transactions on a shared connection are not isolated from each other, so
    callers must not interleave them.
    """
    return isinstance(engine.sync_engine.pool, StaticPool)
