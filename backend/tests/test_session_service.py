"""Tests for session and shot lifecycle operations."""

import pytest

from contipipe.errors import (
    InvalidSessionRequestError,
    ProviderUnsupportedContinuityError,
    SessionNotFoundError,
    ShotNotFoundError,
)
from contipipe.orchestrator.session_service import SessionService
from contipipe.schemas.continuity import CameraPose
from contipipe.schemas.requests import CreateSessionRequest, CreateShotRequest, ShotUpdate
from contipipe.services.media_io import MediaFetcher
from contipipe.services.style_reference import StyleReferenceService

from conftest import USER_ID, FakeSceneProxies, make_bridge, make_session, make_shot


@pytest.fixture
def service(store, capabilities, media, scene_proxies, build_generator):
    return SessionService(
        store=store,
        capabilities=capabilities,
        media=media,
        style_references=StyleReferenceService(MediaFetcher()),
        scene_proxies=scene_proxies,
        shot_generator=build_generator(store),
    )


async def _create(service, image_file, **fields):
    request = CreateSessionRequest(name="Fox in the snow", source_image_url=image_file.as_uri(), **fields)
    return await service.create_session(USER_ID, request)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


async def test_create_session_from_image(service, image_file):
    session = await _create(service, image_file, settings={"max_retries": 2})

    assert session.version == 0
    assert session.user_id == USER_ID
    assert session.primary_style_reference.frame_url == image_file.as_uri()
    assert session.primary_style_reference.analysis_metadata["dominant_colors"]
    assert session.default_settings.max_retries == 2
    assert (await service.get_session(session.id)).version == 0


async def test_create_session_from_video(service, media):
    media.video_urls["video-src"] = "file:///videos/src.mp4"

    session = await service.create_session(
        USER_ID, CreateSessionRequest(name="From clip", source_video_id="video-src")
    )

    reference = session.primary_style_reference
    assert reference.source_video_id == "video-src"
    assert reference.frame_url == "file:///frames/video-src-rep.png"


async def test_create_session_requires_a_source(service):
    with pytest.raises(InvalidSessionRequestError):
        await service.create_session(USER_ID, CreateSessionRequest(name="Nothing"))


async def test_create_session_with_unknown_video(service):
    with pytest.raises(InvalidSessionRequestError, match="Source video not found"):
        await service.create_session(USER_ID, CreateSessionRequest(name="x", source_video_id="nope"))


async def test_create_session_rejects_invalid_settings(service, image_file):
    with pytest.raises(InvalidSessionRequestError):
        await _create(service, image_file, settings={"max_retries": -1})


async def test_create_session_is_idempotent_on_session_id(service, image_file):
    first = await _create(service, image_file, session_id="client-chosen")
    again = await _create(service, image_file, session_id="client-chosen")

    assert first.id == again.id == "client-chosen"
    assert again.version == 0
    assert len(await service.get_user_sessions(USER_ID)) == 1


async def test_create_session_with_initial_prompt_generates_first_shot(service, image_file, media):
    session = await _create(service, image_file, initial_prompt="A fox turns its head")

    assert len(session.shots) == 1
    shot = session.shots[0]
    assert shot.user_prompt == "A fox turns its head"
    assert shot.status == "completed"
    assert len(media.generate_calls) == 1


async def test_delete_session(service, image_file):
    session = await _create(service, image_file)
    assert await service.delete_session(session.id) is True
    assert await service.get_session(session.id) is None


async def test_update_session_settings_merges_thresholds(service, image_file):
    session = await _create(service, image_file)

    updated = await service.update_session_settings(
        session.id,
        {"quality_thresholds": {"identity": 0.4}, "use_scene_proxy": True, "bogus": 1},
    )

    settings = updated.default_settings
    assert settings.quality_thresholds.identity == 0.4
    assert settings.quality_thresholds.style == 0.75
    assert settings.use_scene_proxy is True
    assert updated.version == 1


async def test_update_primary_style_reference(service, image_file, media):
    session = await _create(service, image_file)
    media.video_urls["video-new"] = "file:///videos/new.mp4"

    updated = await service.update_primary_style_reference(session.id, source_video_id="video-new")

    assert updated.primary_style_reference.source_video_id == "video-new"
    assert updated.version == 1


# ---------------------------------------------------------------------------
# Shots
# ---------------------------------------------------------------------------


async def test_add_shots_in_sequence(service, image_file):
    session = await _create(service, image_file)

    first = await service.add_shot(CreateShotRequest(session_id=session.id, prompt="one"))
    second = await service.add_shot(CreateShotRequest(session_id=session.id, prompt="two"))

    assert (first.sequence_index, second.sequence_index) == (0, 1)
    assert first.status == "draft"
    assert first.style_reference_id is None
    # Later shots default to the previous shot's style
    assert second.style_reference_id == first.id
    assert second.model_id == "veo-3.1-generate-001"
    assert second.style_strength == 0.6


async def test_explicit_null_style_reference_uses_primary(service, image_file):
    session = await _create(service, image_file)
    await service.add_shot(CreateShotRequest(session_id=session.id, prompt="one"))

    second = await service.add_shot(
        CreateShotRequest(session_id=session.id, prompt="two", style_reference_id=None)
    )

    assert second.style_reference_id is None


async def test_add_shot_inherits_previous_bridge(service, store):
    session = make_session()
    session.merge_shot(
        make_shot("shot-1", 0, status="completed", video_asset_id="video-1",
                  frame_bridge=make_bridge("video-1", "shot-1"))
    )
    await store.save(session)

    shot = await service.add_shot(CreateShotRequest(session_id="session-1", prompt="next"))

    assert shot.frame_bridge.source_shot_id == "shot-1"


async def test_add_shot_extracts_missing_bridge(service, store, media):
    media.video_urls["video-1"] = "file:///videos/1.mp4"
    session = make_session()
    session.merge_shot(make_shot("shot-1", 0, status="completed", video_asset_id="video-1"))
    await store.save(session)

    shot = await service.add_shot(CreateShotRequest(session_id="session-1", prompt="next"))

    assert media.bridge_calls == [("video-1", "shot-1")]
    assert shot.frame_bridge.frame_url == "file:///frames/video-1-last.png"


async def test_add_shot_survives_bridge_failure(service, store, media):
    media.video_urls["video-1"] = "file:///videos/1.mp4"
    media.fail_bridge = True
    session = make_session()
    session.merge_shot(make_shot("shot-1", 0, status="completed", video_asset_id="video-1"))
    await store.save(session)

    shot = await service.add_shot(CreateShotRequest(session_id="session-1", prompt="next"))

    assert shot.frame_bridge is None


async def test_add_shot_rejects_incapable_model(service, image_file):
    session = await _create(service, image_file)

    with pytest.raises(ProviderUnsupportedContinuityError):
        await service.add_shot(CreateShotRequest(session_id=session.id, prompt="x", model_id="wan-2.2-t2v"))

    # Standard mode has no such requirement
    shot = await service.add_shot(
        CreateShotRequest(session_id=session.id, prompt="x", model_id="wan-2.2-t2v", generation_mode="standard")
    )
    assert shot.generation_mode == "standard"


async def test_imported_clip_is_a_completed_shot(service, image_file):
    session = await _create(service, image_file)

    shot = await service.add_shot(
        CreateShotRequest(session_id=session.id, prompt="existing", source_video_id="video-imported")
    )

    assert shot.status == "completed"
    assert shot.video_asset_id == "video-imported"
    assert shot.generated_at is not None


async def test_add_shot_to_missing_session(service):
    with pytest.raises(SessionNotFoundError):
        await service.add_shot(CreateShotRequest(session_id="missing", prompt="x"))


async def test_generate_shot_through_service(service, image_file):
    session = await _create(service, image_file)
    shot = await service.add_shot(CreateShotRequest(session_id=session.id, prompt="go"))

    generated = await service.generate_shot(session.id, shot.id)

    assert generated.status == "completed"
    assert (await service.get_session(session.id)).find_shot(shot.id).status == "completed"


async def test_update_shot_fields(service, image_file):
    session = await _create(service, image_file)
    shot = await service.add_shot(
        CreateShotRequest(
            session_id=session.id,
            prompt="one",
            character_asset_id="char-1",
            camera=CameraPose(yaw=2.0, pitch=1.0),
        )
    )

    updated = await service.update_shot(
        session.id,
        shot.id,
        {"prompt": "revised", "character_asset_id": None, "camera": {"yaw": -3.0}, "style_strength": 0.9},
    )

    assert updated.user_prompt == "revised"
    assert updated.character_asset_id is None
    assert updated.camera == CameraPose(yaw=-3.0, pitch=1.0)
    assert updated.style_strength == 0.9


async def test_update_shot_leaves_unset_fields(service, image_file):
    session = await _create(service, image_file)
    shot = await service.add_shot(
        CreateShotRequest(session_id=session.id, prompt="one", character_asset_id="char-1")
    )

    updated = await service.update_shot(session.id, shot.id, ShotUpdate(prompt="only the prompt"))

    assert updated.character_asset_id == "char-1"


async def test_update_shot_rejects_status_and_bad_values(service, image_file):
    session = await _create(service, image_file)
    shot = await service.add_shot(CreateShotRequest(session_id=session.id, prompt="one"))

    with pytest.raises(InvalidSessionRequestError, match="status"):
        await service.update_shot(session.id, shot.id, {"status": "completed"})
    with pytest.raises(InvalidSessionRequestError):
        await service.update_shot(session.id, shot.id, {"style_strength": 3.0})
    with pytest.raises(ShotNotFoundError):
        await service.update_shot(session.id, "missing", {"prompt": "x"})


async def test_update_shot_style_reference(service, image_file):
    session = await _create(service, image_file)
    first = await service.add_shot(CreateShotRequest(session_id=session.id, prompt="one"))
    second = await service.add_shot(CreateShotRequest(session_id=session.id, prompt="two"))

    updated = await service.update_shot_style_reference(session.id, second.id, None)
    assert updated.style_reference_id is None

    updated = await service.update_shot_style_reference(session.id, second.id, first.id)
    assert updated.style_reference_id == first.id


async def test_style_reference_must_be_an_earlier_shot(service, image_file):
    session = await _create(service, image_file)
    first = await service.add_shot(CreateShotRequest(session_id=session.id, prompt="one"))
    second = await service.add_shot(CreateShotRequest(session_id=session.id, prompt="two"))

    with pytest.raises(InvalidSessionRequestError, match="earlier shot"):
        await service.update_shot_style_reference(session.id, first.id, second.id)
    with pytest.raises(InvalidSessionRequestError, match="earlier shot"):
        await service.update_shot_style_reference(session.id, first.id, first.id)
    with pytest.raises(InvalidSessionRequestError, match="earlier shot"):
        await service.update_shot(session.id, second.id, {"style_reference_id": "missing"})
    with pytest.raises(InvalidSessionRequestError, match="earlier shot"):
        await service.add_shot(
            CreateShotRequest(session_id=session.id, prompt="three", style_reference_id="missing")
        )

    stored = await service.get_session(session.id)
    assert len(stored.shots) == 2
    assert stored.find_shot(first.id).style_reference_id is None
    assert stored.find_shot(second.id).style_reference_id == first.id


# ---------------------------------------------------------------------------
# Scene proxies
# ---------------------------------------------------------------------------


async def test_ready_scene_proxy_enables_setting(service, image_file, media):
    session = await _create(service, image_file)
    media.video_urls["video-src"] = "file:///videos/src.mp4"

    updated = await service.create_scene_proxy(session.id, source_video_id="video-src")

    assert updated.scene_proxy.status == "ready"
    assert updated.default_settings.use_scene_proxy is True


async def test_failed_scene_proxy_leaves_setting(store, capabilities, media, build_generator, image_file):
    service = SessionService(
        store=store,
        capabilities=capabilities,
        media=media,
        style_references=StyleReferenceService(MediaFetcher()),
        scene_proxies=FakeSceneProxies(status="failed"),
        shot_generator=build_generator(store),
    )
    session = await _create(service, image_file)
    media.video_urls["video-src"] = "file:///videos/src.mp4"

    updated = await service.create_scene_proxy(session.id, source_video_id="video-src")

    assert updated.scene_proxy.status == "failed"
    assert updated.scene_proxy.error == "Insufficient parallax depth for scene proxy."
    assert updated.default_settings.use_scene_proxy is False


async def test_scene_proxy_from_shot_requires_video(service, image_file):
    session = await _create(service, image_file)
    shot = await service.add_shot(CreateShotRequest(session_id=session.id, prompt="one"))

    with pytest.raises(InvalidSessionRequestError):
        await service.create_scene_proxy(session.id, source_shot_id=shot.id)
    with pytest.raises(InvalidSessionRequestError):
        await service.create_scene_proxy(session.id)
