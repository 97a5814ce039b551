"""Dependency wiring for the continuity engine.

The video backend and character asset lookup are supplied by the host
application; everything else is built from settings.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from contipipe import validate_dependencies
from contipipe.config import Settings, get_settings
from contipipe.db import build_engine, build_session_factory, init_database, shutdown
from contipipe.orchestrator.session_service import SessionService
from contipipe.orchestrator.shot_generator import ShotGenerator
from contipipe.schemas.continuity import QualityThresholds, SessionSettings
from contipipe.services.anchor import AnchorService
from contipipe.services.character_keyframe import CharacterKeyframeService
from contipipe.services.clip_embedding import CLIPEmbeddingService
from contipipe.services.collaborators import (
    CharacterAssetLookup,
    FaceConsistencyModel,
    StyleTransferModel,
    VideoGenerationBackend,
)
from contipipe.services.depth import TransformersDepthEstimator
from contipipe.services.face_matching import FaceMatchingService
from contipipe.services.frame_extraction import FfmpegFrameExtractor, FrameBridgeService
from contipipe.services.grading import GradingService
from contipipe.services.media import ContinuityMediaService
from contipipe.services.media_io import MediaFetcher
from contipipe.services.provider_capabilities import ProviderCapabilityAdapter
from contipipe.services.quality_gate import QualityGateService
from contipipe.services.scene_proxy import SceneProxyService
from contipipe.services.seed_persistence import SeedPersistenceService
from contipipe.services.session_store import SessionStore
from contipipe.services.storage import LocalObjectStorage
from contipipe.services.style_reference import StyleReferenceService

logger = logging.getLogger(__name__)


@dataclass
class EngineContainer:
    """Holds the engine's long-lived services."""

    settings: Settings
    store: SessionStore
    capabilities: ProviderCapabilityAdapter
    media: ContinuityMediaService
    shot_generator: ShotGenerator
    session_service: SessionService
    close_resources: Callable[[], Awaitable[None]]


def default_session_settings(settings: Settings) -> SessionSettings:
    """Session defaults derived from the engine configuration."""
    return SessionSettings(
        default_model=settings.models.default_video_model,
        quality_thresholds=QualityThresholds(
            style=settings.continuity.default_style_threshold,
            identity=settings.continuity.default_identity_threshold,
        ),
    )


async def build_container(
    video_backend: VideoGenerationBackend,
    character_assets: Optional[CharacterAssetLookup] = None,
    style_transfer: Optional[StyleTransferModel] = None,
    face_consistency: Optional[FaceConsistencyModel] = None,
    settings: Optional[Settings] = None,
    load_vision_models: bool = True,
    check_binaries: bool = True,
) -> EngineContainer:
    """Create the default engine container and prepare the database.

    Vision models load lazily on first use; with ``load_vision_models=False``
    the quality gate falls back to histograms and the scene proxy to
    luminance depth.

    Raises:
        RuntimeError: If ``check_binaries`` is set and ffmpeg is missing.
    """
    settings = settings or get_settings()
    if check_binaries:
        validate_dependencies()

    engine = build_engine(settings.storage.database_url)
    await init_database(engine)
    store = SessionStore(build_session_factory(engine))

    fetcher = MediaFetcher(
        timeout=settings.http.download_timeout,
        retry_attempts=settings.http.download_retry_attempts,
    )
    storage = LocalObjectStorage(settings.storage.tmp_dir / "objects", settings.storage.public_base_url)
    frames = FrameBridgeService(
        FfmpegFrameExtractor(),
        storage,
        representative_candidates=settings.continuity.representative_frame_candidates,
    )

    embedding_model = face_model = depth_estimator = None
    if load_vision_models:
        embedding_model = CLIPEmbeddingService(settings.models.clip_model)
        face_model = FaceMatchingService(settings.models.face_model)
        depth_estimator = TransformersDepthEstimator(settings.models.depth_model)
    else:
        logger.info("Vision models disabled; using histogram and luminance fallbacks")

    capabilities = ProviderCapabilityAdapter()
    style_references = StyleReferenceService(fetcher, style_transfer)
    media = ContinuityMediaService(video_backend, storage, frames, style_references, character_assets)
    scene_proxies = SceneProxyService(
        frames,
        storage,
        fetcher,
        depth_estimator=depth_estimator,
        variance_threshold=settings.continuity.depth_variance_threshold,
        parallax_scale=settings.continuity.parallax_scale,
    )
    character_keyframes = (
        CharacterKeyframeService(character_assets, face_consistency) if character_assets is not None else None
    )

    shot_generator = ShotGenerator(
        store=store,
        capabilities=capabilities,
        anchors=AnchorService(capabilities),
        seeds=SeedPersistenceService(capabilities),
        media=media,
        grading=GradingService(fetcher, storage, frames, tmp_dir=settings.storage.tmp_dir),
        quality_gate=QualityGateService(
            frames,
            fetcher,
            embedding_model=embedding_model,
            face_model=face_model,
            histogram_bins=settings.continuity.histogram_bins,
        ),
        scene_proxies=scene_proxies,
        character_keyframes=character_keyframes,
        persist_max_attempts=settings.continuity.persist_max_attempts,
        default_face_strength=settings.continuity.default_face_strength,
    )
    session_service = SessionService(
        store=store,
        capabilities=capabilities,
        media=media,
        style_references=style_references,
        scene_proxies=scene_proxies,
        shot_generator=shot_generator,
        default_settings=default_session_settings(settings),
    )

    async def close_resources() -> None:
        await shutdown(engine)

    return EngineContainer(
        settings=settings,
        store=store,
        capabilities=capabilities,
        media=media,
        shot_generator=shot_generator,
        session_service=session_service,
        close_resources=close_resources,
    )
