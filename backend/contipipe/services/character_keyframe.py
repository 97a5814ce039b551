"""Identity-preserving keyframes for shots that feature a known character."""

import logging
from typing import Optional

from contipipe.errors import CharacterConsistencyUnavailableError, InvalidSessionRequestError
from contipipe.services.collaborators import CharacterAssetLookup, FaceConsistencyModel
from contipipe.services.media_io import coerce_aspect_ratio

logger = logging.getLogger(__name__)

DEFAULT_FACE_STRENGTH = 0.8


class CharacterKeyframeService:
    """Generate PuLID keyframes from a character asset's reference face."""

    def __init__(
        self,
        assets: CharacterAssetLookup,
        face_model: Optional[FaceConsistencyModel] = None,
    ):
        self._assets = assets
        self._face_model = face_model

    @property
    def available(self) -> bool:
        return self._face_model is not None

    async def generate_keyframe(
        self,
        user_id: str,
        prompt: str,
        character_asset_id: str,
        face_strength: float = DEFAULT_FACE_STRENGTH,
        aspect_ratio: Optional[str] = None,
    ) -> str:
        """Return the URL of a keyframe showing the character.

        Raises:
            CharacterConsistencyUnavailableError: If no face-consistency
                model is configured.
            InvalidSessionRequestError: If the character asset does not exist.
        """
        if self._face_model is None:
            raise CharacterConsistencyUnavailableError()

        try:
            asset = await self._assets.get_asset_for_generation(user_id, character_asset_id)
        except LookupError as e:
            raise InvalidSessionRequestError(f"Character asset not found: {character_asset_id}") from e
        logger.info(
            f"Generating character keyframe for asset {character_asset_id} "
            f"(face_strength={face_strength:.2f})"
        )
        return await self._face_model.generate_keyframe(
            prompt,
            asset.primary_image_url,
            face_strength,
            coerce_aspect_ratio(aspect_ratio),
        )
