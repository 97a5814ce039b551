"""Tests for versioned session persistence and document migration."""

import asyncio

import pytest

from contipipe.db import build_engine, build_session_factory, init_database, shares_connection, shutdown
from contipipe.errors import SessionNotFoundError, VersionMismatchError
from contipipe.schemas.continuity import SCHEMA_VERSION, migrate_document, session_from_document
from contipipe.services.session_store import SessionStore

from conftest import USER_ID, make_session, make_shot


async def test_save_creates_at_version_zero_then_increments(store):
    session = make_session()
    assert await store.save(session) == 0
    assert session.version == 0

    session.name = "Renamed"
    assert await store.save(session) == 1

    loaded = await store.get(session.id)
    assert loaded.version == 1
    assert loaded.name == "Renamed"


async def test_save_with_version_is_compare_and_swap(store):
    session = make_session()
    await store.save(session)

    first = await store.get(session.id)
    second = await store.get(session.id)

    first.name = "first writer"
    assert await store.save_with_version(first, 0) == 1

    second.name = "second writer"
    with pytest.raises(VersionMismatchError) as excinfo:
        await store.save_with_version(second, 0)
    assert excinfo.value.expected_version == 0
    assert excinfo.value.actual_version == 1

    assert (await store.get(session.id)).name == "first writer"


async def test_save_with_version_on_missing_document_raises(store):
    with pytest.raises(VersionMismatchError) as excinfo:
        await store.save_with_version(make_session("ghost"), 0)
    assert excinfo.value.actual_version is None


async def test_update_retries_after_conflict(store):
    session = make_session()
    await store.save(session)
    calls = []

    def mutate(fresh):
        calls.append(fresh.version)
        if len(calls) == 1:
            # Simulate another writer committing between our read and write
            raise VersionMismatchError(fresh.id, fresh.version, fresh.version + 1)
        fresh.merge_shot(make_shot("shot-a", 0))
        return "ok"

    updated, result = await store.update(session.id, mutate)

    assert result == "ok"
    assert len(calls) == 2
    assert updated.version == 1
    assert [s.id for s in (await store.get(session.id)).shots] == ["shot-a"]


@pytest.fixture(params=["memory", "file"])
async def any_store(request, tmp_path):
    if request.param == "memory":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        url = f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}"
    engine = build_engine(url)
    await init_database(engine)
    yield SessionStore(build_session_factory(engine))
    await shutdown(engine)


async def test_only_memory_engine_shares_a_connection(tmp_path):
    memory = build_engine("sqlite+aiosqlite:///:memory:")
    on_disk = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'shared.db'}")
    try:
        assert shares_connection(memory)
        assert not shares_connection(on_disk)
    finally:
        await shutdown(memory)
        await shutdown(on_disk)


async def test_racing_versioned_saves_admit_one_writer(any_store):
    session = make_session()
    await any_store.save(session)
    first = await any_store.get(session.id)
    second = await any_store.get(session.id)
    first.name = "first writer"
    second.name = "second writer"

    results = await asyncio.gather(
        any_store.save_with_version(first, 0),
        any_store.save_with_version(second, 0),
        return_exceptions=True,
    )

    assert [r for r in results if not isinstance(r, Exception)] == [1]
    assert len([r for r in results if isinstance(r, VersionMismatchError)]) == 1
    assert (await any_store.get(session.id)).version == 1


async def test_racing_updates_keep_every_change(any_store):
    await any_store.save(make_session())

    def add(shot_id, seq):
        return lambda session: session.merge_shot(make_shot(shot_id, seq))

    await asyncio.gather(
        any_store.update("session-1", add("shot-a", 0), max_attempts=5),
        any_store.update("session-1", add("shot-b", 1), max_attempts=5),
    )

    stored = await any_store.get("session-1")
    assert [s.id for s in stored.shots] == ["shot-a", "shot-b"]
    assert stored.version == 2


async def test_update_missing_session_raises(store):
    with pytest.raises(SessionNotFoundError):
        await store.update("missing", lambda s: None)


async def test_find_by_user_and_delete(store):
    await store.save(make_session("s1"))
    await store.save(make_session("s2"))

    found = await store.find_by_user(USER_ID)
    assert {s.id for s in found} == {"s1", "s2"}
    assert await store.find_by_user("someone-else") == []

    assert await store.delete("s1") is True
    assert await store.delete("s1") is False
    assert await store.get("s1") is None


async def test_shots_round_trip_in_sequence_order(store):
    session = make_session()
    session.merge_shot(make_shot("shot-b", 1))
    session.merge_shot(make_shot("shot-a", 0))
    await store.save(session)

    loaded = await store.get(session.id)
    assert [s.id for s in loaded.shots] == ["shot-a", "shot-b"]


def test_v1_document_is_upgraded():
    doc = {
        "id": "legacy",
        "userId": USER_ID,
        "name": "Legacy",
        "primaryStyleReference": {
            "id": "ref",
            "frameUrl": "file:///ref.png",
            "resolution": {"width": 640, "height": 360},
            "aspectRatio": "16:9",
        },
        "shots": [],
    }
    session = session_from_document(doc, schema_version=1)

    assert session.user_id == USER_ID
    assert session.primary_style_reference.frame_url == "file:///ref.png"
    assert session.version == 0
    assert session.scene_proxy is None


def test_newer_schema_is_rejected():
    with pytest.raises(ValueError):
        migrate_document({}, SCHEMA_VERSION + 1)
