"""SQLAlchemy 2.0 ORM models for contipipe."""

from datetime import datetime

from sqlalchemy import JSON, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class ContinuitySessionRecord(Base):
    """Stored continuity session document.

    The whole session (style reference, scene proxy, shots, settings) lives in
    ``document``; ``version`` is the optimistic-concurrency counter and is the
    only column compared during a versioned write.
    """
    __tablename__ = "continuity_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    name: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="active")
    version: Mapped[int] = mapped_column(Integer, default=0)
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    document: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )
