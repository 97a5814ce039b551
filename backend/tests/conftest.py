"""Shared fixtures and hand-written fakes for the continuity engine tests.

The store is the real SQLAlchemy store over in-memory SQLite. Media, grading,
quality gate and scene proxy collaborators are small fakes that record their
calls so tests can assert on what the orchestrator asked for.
"""

from pathlib import Path
from typing import Optional

import numpy as np
import pytest

from contipipe.db import build_engine, build_session_factory, init_database, shutdown
from contipipe.errors import MediaExtractionUnavailableError, StyleTransferUnavailableError
from contipipe.orchestrator.shot_generator import ShotGenerator
from contipipe.schemas.continuity import (
    FrameBridge,
    Resolution,
    SceneProxy,
    SceneProxyRender,
    Session,
    SessionSettings,
    Shot,
    StyleReference,
)
from contipipe.services.anchor import AnchorService
from contipipe.services.collaborators import FrameExtractor, GenerationResult
from contipipe.services.frame_extraction import ExtractedFrame
from contipipe.services.grading import ImageGradeResult, VideoGradeResult
from contipipe.services.media_io import encode_png
from contipipe.services.provider_capabilities import ProviderCapabilityAdapter
from contipipe.services.quality_gate import QualityGateResult
from contipipe.services.seed_persistence import SeedPersistenceService
from contipipe.services.session_store import SessionStore

USER_ID = "user-1"


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_style_reference(ref_id: str = "style-primary", frame_url: str = "file:///refs/primary.png") -> StyleReference:
    return StyleReference(
        id=ref_id,
        frame_url=frame_url,
        resolution=Resolution(width=1280, height=720),
        aspect_ratio="16:9",
    )


def make_bridge(video_id: str, shot_id: str) -> FrameBridge:
    return FrameBridge(
        id=f"bridge-{shot_id}",
        source_video_id=video_id,
        source_shot_id=shot_id,
        frame_url=f"file:///frames/{video_id}-last.png",
        frame_timestamp=3.9,
        resolution=Resolution(width=1280, height=720),
        aspect_ratio="16:9",
    )


def make_session(session_id: str = "session-1", **settings) -> Session:
    return Session(
        id=session_id,
        user_id=USER_ID,
        name="Test session",
        primary_style_reference=make_style_reference(),
        default_settings=SessionSettings(**settings),
    )


def make_shot(
    shot_id: str,
    sequence_index: int,
    session_id: str = "session-1",
    model_id: str = "veo-3.1-generate-001",
    **fields,
) -> Shot:
    return Shot(
        id=shot_id,
        session_id=session_id,
        sequence_index=sequence_index,
        user_prompt=fields.pop("user_prompt", f"prompt for {shot_id}"),
        model_id=model_id,
        **fields,
    )


def solid_png(color: tuple[int, int, int], size: tuple[int, int] = (32, 18)) -> bytes:
    width, height = size
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    pixels[...] = color
    return encode_png(pixels)


def gradient_png(size: tuple[int, int] = (64, 36)) -> bytes:
    width, height = size
    row = np.linspace(0, 255, width, dtype=np.uint8)
    pixels = np.stack([np.tile(row, (height, 1))] * 3, axis=-1)
    return encode_png(pixels)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeFrameExtractor(FrameExtractor):
    """Returns the same frame for every timestamp of every clip."""

    def __init__(self, frame_bytes: bytes, duration: float = 4.0):
        self.frame_bytes = frame_bytes
        self.duration = duration
        self.requests: list[tuple[str, float]] = []

    async def extract_frame_at(self, video_url: str, timestamp_seconds: float) -> bytes:
        self.requests.append((video_url, timestamp_seconds))
        return self.frame_bytes

    async def probe_duration(self, video_url: str) -> float:
        return self.duration


class FakeMedia:
    """Stands in for ContinuityMediaService."""

    def __init__(self):
        self.generate_calls: list[tuple[str, dict]] = []
        self.queued_results: list[GenerationResult] = []
        self.video_urls: dict[str, str] = {}
        self.styled_keyframe_calls: list[tuple[str, str, float]] = []
        self.bridge_calls: list[tuple[str, str]] = []
        self.character_reference_urls: dict[str, str] = {}
        self.fail_bridge = False
        self.fail_style_transfer = False

    async def generate_video(self, prompt: str, options: dict) -> GenerationResult:
        self.generate_calls.append((prompt, dict(options)))
        if self.queued_results:
            result = self.queued_results.pop(0)
        else:
            n = len(self.generate_calls)
            result = GenerationResult(asset_id=f"video-{n}", video_url=f"file:///videos/video-{n}.mp4")
        self.video_urls[result.asset_id] = result.video_url
        return result

    async def get_video_url(self, asset_id: str) -> Optional[str]:
        return self.video_urls.get(asset_id)

    async def extract_bridge_frame(self, user_id, video_id, video_url, shot_id, position="last") -> FrameBridge:
        self.bridge_calls.append((video_id, shot_id))
        if self.fail_bridge:
            raise MediaExtractionUnavailableError()
        return make_bridge(video_id, shot_id)

    async def extract_representative_frame(self, user_id, video_id, video_url, purpose) -> ExtractedFrame:
        return ExtractedFrame(
            frame_url=f"file:///frames/{video_id}-rep.png",
            frame_timestamp=2.0,
            resolution=Resolution(width=1280, height=720),
            aspect_ratio="16:9",
        )

    async def create_style_reference_from_video(self, video_id: str, frame: ExtractedFrame) -> StyleReference:
        return StyleReference(
            id=f"style-{video_id}",
            source_video_id=video_id,
            frame_url=frame.frame_url,
            frame_timestamp=frame.frame_timestamp,
            resolution=frame.resolution,
            aspect_ratio=frame.aspect_ratio,
        )

    async def generate_styled_keyframe(self, prompt, style_reference_url, strength, aspect_ratio=None) -> str:
        self.styled_keyframe_calls.append((prompt, style_reference_url, strength))
        if self.fail_style_transfer:
            raise StyleTransferUnavailableError("Style keyframe generation failed (IP-Adapter).")
        return f"file:///keyframes/styled-{len(self.styled_keyframe_calls)}.png"

    async def get_character_reference_url(self, user_id, character_asset_id) -> Optional[str]:
        return self.character_reference_urls.get(character_asset_id)


class FakeGrading:
    def __init__(self, image_applied: bool = True):
        self.image_applied = image_applied
        self.palette_calls: list[str] = []
        self.image_calls: list[str] = []

    async def match_palette(self, user_id, asset_id, video_url, reference_url) -> VideoGradeResult:
        self.palette_calls.append(asset_id)
        return VideoGradeResult(applied=False, asset_id=asset_id, video_url=video_url)

    async def match_image_palette(self, user_id, image_url, reference_url) -> ImageGradeResult:
        self.image_calls.append(image_url)
        if not self.image_applied:
            return ImageGradeResult(applied=False, error="palette match failed")
        return ImageGradeResult(applied=True, image_url=image_url.replace(".png", "-graded.png"))


class ScriptedQualityGate:
    """Returns queued results in order; passes once the queue is empty."""

    def __init__(self, *results: QualityGateResult):
        self.results = list(results)
        self.requests = []

    async def evaluate(self, request) -> QualityGateResult:
        self.requests.append(request)
        if self.results:
            return self.results.pop(0)
        return QualityGateResult(style_score=0.9, passed=True)


class FakeSceneProxies:
    def __init__(self, status: str = "ready"):
        self.status = status
        self.render_calls: list[str] = []

    async def create_proxy_from_video(self, user_id, video_id, video_url) -> SceneProxy:
        return SceneProxy(
            id=f"proxy-{video_id}",
            source_video_id=video_id,
            reference_frame_url=f"file:///frames/{video_id}-rep.png",
            depth_map_url=f"file:///previews/{video_id}-depth.png" if self.status == "ready" else None,
            status=self.status,
            error=None if self.status == "ready" else "Insufficient parallax depth for scene proxy.",
        )

    async def render_from_proxy(self, user_id, proxy, shot_id, camera=None) -> SceneProxyRender:
        self.render_calls.append(shot_id)
        return SceneProxyRender(
            id=f"render-{shot_id}",
            proxy_id=proxy.id,
            shot_id=shot_id,
            render_url=f"file:///previews/render-{shot_id}.png",
            camera_pose=camera,
        )


class FakeCharacterKeyframes:
    def __init__(self, available: bool = True):
        self.available = available
        self.calls: list[tuple[str, float]] = []

    async def generate_keyframe(self, user_id, prompt, character_asset_id, face_strength=0.8, aspect_ratio=None) -> str:
        self.calls.append((character_asset_id, face_strength))
        return f"file:///keyframes/pulid-{character_asset_id}-{len(self.calls)}.png"


class RecordingObserver:
    def __init__(self):
        self.stages: list[tuple[str, int]] = []
        self.completed: list[Shot] = []

    def on_stage(self, shot_id, stage, attempt):
        self.stages.append((stage, attempt))

    def on_complete(self, shot):
        self.completed.append(shot)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def store():
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await init_database(engine)
    yield SessionStore(build_session_factory(engine))
    await shutdown(engine)


@pytest.fixture
def capabilities():
    return ProviderCapabilityAdapter()


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def grading():
    return FakeGrading()


@pytest.fixture
def quality_gate():
    return ScriptedQualityGate()


@pytest.fixture
def scene_proxies():
    return FakeSceneProxies()


@pytest.fixture
def character_keyframes():
    return FakeCharacterKeyframes()


@pytest.fixture
def build_generator(capabilities, media, grading, quality_gate, scene_proxies, character_keyframes):
    """Factory so tests can swap the store or a collaborator."""

    def _build(store, **overrides) -> ShotGenerator:
        parts = dict(
            store=store,
            capabilities=capabilities,
            anchors=AnchorService(capabilities),
            seeds=SeedPersistenceService(capabilities),
            media=media,
            grading=grading,
            quality_gate=quality_gate,
            scene_proxies=scene_proxies,
            character_keyframes=character_keyframes,
        )
        parts.update(overrides)
        return ShotGenerator(**parts)

    return _build


@pytest.fixture
def image_file(tmp_path: Path) -> Path:
    path = tmp_path / "reference.png"
    path.write_bytes(gradient_png())
    return path
