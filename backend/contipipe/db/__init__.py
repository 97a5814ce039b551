"""
Database module for contipipe.

Provides async SQLAlchemy engine construction with SQLite WAL mode,
session factories, and schema initialization.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from contipipe.db.engine import build_engine, build_session_factory, shares_connection
from contipipe.db.models import Base, ContinuitySessionRecord

logger = logging.getLogger(__name__)


async def init_database(engine: AsyncEngine) -> None:
    """Initialize database schema on first run."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


async def shutdown(engine: AsyncEngine) -> None:
    """Dispose of engine and close all connections."""
    await engine.dispose()


__all__ = [
    "Base",
    "ContinuitySessionRecord",
    "build_engine",
    "build_session_factory",
    "init_database",
    "shares_connection",
    "shutdown",
]
