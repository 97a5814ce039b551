"""Media facade used by the shot generator.

Bundles the video backend, object storage, frame extraction and style
reference services behind the handful of calls the orchestrator makes.
"""

import logging
from typing import Any, Optional

from contipipe.schemas.continuity import FrameBridge, FramePosition, StyleReference
from contipipe.services.collaborators import (
    CharacterAssetLookup,
    GenerationResult,
    ObjectStorage,
    VideoGenerationBackend,
)
from contipipe.services.frame_extraction import ExtractedFrame, FrameBridgeService
from contipipe.services.style_reference import StyleReferenceService

logger = logging.getLogger(__name__)


class ContinuityMediaService:
    def __init__(
        self,
        video_backend: VideoGenerationBackend,
        storage: ObjectStorage,
        frames: FrameBridgeService,
        style_references: StyleReferenceService,
        character_assets: Optional[CharacterAssetLookup] = None,
    ):
        self._video_backend = video_backend
        self._storage = storage
        self._frames = frames
        self._style_references = style_references
        self._character_assets = character_assets

    async def generate_video(self, prompt: str, options: dict[str, Any]) -> GenerationResult:
        logger.info(f"Generating video with {options.get('model')} (start image: {bool(options.get('startImage'))})")
        return await self._video_backend.generate_video(prompt, options)

    async def get_video_url(self, asset_id: str) -> Optional[str]:
        """Resolve an asset id; graded clips live in object storage."""
        url = await self._storage.get_view_url(asset_id)
        if url:
            return url
        return await self._video_backend.get_video_url(asset_id)

    async def extract_bridge_frame(
        self,
        user_id: str,
        video_id: str,
        video_url: str,
        shot_id: str,
        position: FramePosition = "last",
    ) -> FrameBridge:
        return await self._frames.extract_bridge_frame(user_id, video_id, video_url, shot_id, position)

    async def extract_representative_frame(
        self,
        user_id: str,
        video_id: str,
        video_url: str,
        purpose: str,
    ) -> ExtractedFrame:
        return await self._frames.extract_representative_frame(user_id, video_id, video_url, purpose)

    async def create_style_reference_from_video(
        self,
        video_id: str,
        frame: ExtractedFrame,
    ) -> StyleReference:
        reference = self._style_references.create_from_frame(video_id, frame)
        return await self._style_references.analyze_style_reference(reference, frame.image_bytes or None)

    async def generate_styled_keyframe(
        self,
        prompt: str,
        style_reference_url: str,
        strength: float,
        aspect_ratio: Optional[str] = None,
    ) -> str:
        return await self._style_references.generate_styled_keyframe(
            prompt, style_reference_url, strength, aspect_ratio
        )

    async def get_character_reference_url(self, user_id: str, character_asset_id: str) -> Optional[str]:
        if self._character_assets is None:
            return None
        asset = await self._character_assets.get_asset_for_generation(user_id, character_asset_id)
        return asset.primary_image_url
