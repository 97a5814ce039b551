"""Durable session persistence with optimistic-concurrency versioning.

Every stored session carries an integer ``version``. A versioned write is a
single compare-and-swap: it succeeds only if the stored version still equals
the version the writer last read, and it bumps the version by exactly one.
No writer holds a lock across the (slow) work that produces its mutation;
only the final commit is compared and swapped.

Usage:
    store = SessionStore(session_factory)
    session = await store.get(session_id)
    new_version = await store.save_with_version(session, session.version)

    # read -> mutate -> versioned write, retried on conflict
    await store.update(session_id, lambda s: setattr(s, "name", "Renamed"))
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from contipipe.db.engine import shares_connection
from contipipe.db.models import ContinuitySessionRecord
from contipipe.errors import SessionNotFoundError, VersionMismatchError
from contipipe.schemas.continuity import (
    SCHEMA_VERSION,
    Session,
    session_from_document,
    session_to_document,
    utcnow,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VersionedSessionStore(ABC):
    """Compare-and-swap persistence contract for session documents.

    Any transactional store able to compare an integer version inside a
    single write can implement this.
    """

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        """Return the stored session (with its current version) or None."""
        ...

    @abstractmethod
    async def find_by_user(self, user_id: str) -> list[Session]:
        ...

    @abstractmethod
    async def save(self, session: Session) -> int:
        """Unconditional write. Creates the document at version 0 when it
        does not exist, otherwise increments the stored version."""
        ...

    @abstractmethod
    async def save_with_version(self, session: Session, expected_version: int) -> int:
        """Compare-and-swap write.

        Raises:
            VersionMismatchError: If the document is missing or its stored
                version differs from ``expected_version``.
        """
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...

    async def update(
        self,
        session_id: str,
        mutate: Callable[[Session], T],
        max_attempts: int = 3,
    ) -> tuple[Session, T]:
        """Read the session, apply ``mutate`` and write it back with CAS.

        ``mutate`` is re-applied to a freshly read session after every
        conflict, so it must derive its change from the session it is given.

        Returns:
            Tuple of (persisted session, value returned by ``mutate``).

        Raises:
            SessionNotFoundError: If the session does not exist.
            VersionMismatchError: If every attempt lost the race.
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            retry=retry_if_exception_type(VersionMismatchError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                session = await self.get(session_id)
                if session is None:
                    raise SessionNotFoundError(session_id)
                result = mutate(session)
                session.updated_at = utcnow()
                session.version = await self.save_with_version(session, session.version)
        return session, result


def _document_for(session: Session) -> dict:
    doc = session_to_document(session)
    # The version column is the single source of truth
    doc.pop("version", None)
    return doc


def _record_to_session(record: ContinuitySessionRecord) -> Session:
    doc = dict(record.document)
    doc["version"] = record.version
    return session_from_document(doc, record.schema_version)


class SessionStore(VersionedSessionStore):
    """SQLAlchemy-backed session store.

    On an engine whose sessions share one connection (in-memory SQLite),
    database work is serialized: closing one session would otherwise roll
    back or commit another session's open transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        bind = session_factory.kw.get("bind")
        self._serialize = bind is not None and shares_connection(bind)
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[AsyncSession]:
        if not self._serialize:
            async with self._session_factory() as db:
                yield db
            return
        async with self._lock:
            async with self._session_factory() as db:
                yield db

    async def get(self, session_id: str) -> Optional[Session]:
        async with self._db() as db:
            record = await db.get(ContinuitySessionRecord, session_id)
            if record is None:
                return None
            return _record_to_session(record)

    async def find_by_user(self, user_id: str) -> list[Session]:
        async with self._db() as db:
            result = await db.execute(
                select(ContinuitySessionRecord)
                .where(ContinuitySessionRecord.user_id == user_id)
                .order_by(ContinuitySessionRecord.updated_at.desc())
            )
            return [_record_to_session(r) for r in result.scalars().all()]

    async def list_all(self, limit: int = 100) -> list[Session]:
        async with self._db() as db:
            result = await db.execute(
                select(ContinuitySessionRecord)
                .order_by(ContinuitySessionRecord.updated_at.desc())
                .limit(limit)
            )
            return [_record_to_session(r) for r in result.scalars().all()]

    async def save(self, session: Session) -> int:
        async with self._db() as db:
            async with db.begin():
                record = await db.get(ContinuitySessionRecord, session.id)
                if record is None:
                    new_version = 0
                    db.add(
                        ContinuitySessionRecord(
                            id=session.id,
                            user_id=session.user_id,
                            name=session.name,
                            status=session.status,
                            version=new_version,
                            schema_version=SCHEMA_VERSION,
                            document=_document_for(session),
                        )
                    )
                else:
                    new_version = record.version + 1
                    record.user_id = session.user_id
                    record.name = session.name
                    record.status = session.status
                    record.version = new_version
                    record.schema_version = SCHEMA_VERSION
                    record.document = _document_for(session)

        session.version = new_version
        logger.debug(f"Session {session.id} saved at version {new_version}")
        return new_version

    async def save_with_version(self, session: Session, expected_version: int) -> int:
        new_version = expected_version + 1
        async with self._db() as db:
            async with db.begin():
                result = await db.execute(
                    update(ContinuitySessionRecord)
                    .where(ContinuitySessionRecord.id == session.id)
                    .where(ContinuitySessionRecord.version == expected_version)
                    .values(
                        user_id=session.user_id,
                        name=session.name,
                        status=session.status,
                        version=new_version,
                        schema_version=SCHEMA_VERSION,
                        document=_document_for(session),
                        updated_at=utcnow(),
                    )
                )
                if result.rowcount != 1:
                    actual = await db.scalar(
                        select(ContinuitySessionRecord.version).where(
                            ContinuitySessionRecord.id == session.id
                        )
                    )
                    raise VersionMismatchError(session.id, expected_version, actual)

        session.version = new_version
        return new_version

    async def delete(self, session_id: str) -> bool:
        async with self._db() as db:
            async with db.begin():
                result = await db.execute(
                    delete(ContinuitySessionRecord).where(ContinuitySessionRecord.id == session_id)
                )
        return result.rowcount > 0
