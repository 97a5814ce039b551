"""Style reference records and style-conditioned keyframe synthesis."""

import asyncio
import logging
from typing import Any, Optional

import numpy as np
from PIL import Image

from contipipe.errors import StyleTransferUnavailableError
from contipipe.schemas.continuity import Resolution, StyleReference, new_id
from contipipe.services.collaborators import StyleTransferModel
from contipipe.services.frame_extraction import ExtractedFrame
from contipipe.services.media_io import (
    MediaFetcher,
    aspect_ratio_label,
    coerce_aspect_ratio,
    decode_rgb,
    image_size,
)

logger = logging.getLogger(__name__)

PALETTE_SIZE = 5
# Analysis runs on a thumbnail; full frames add nothing to the statistics
ANALYSIS_MAX_SIDE = 256


def analyze_pixels(rgb: np.ndarray, palette_size: int = PALETTE_SIZE) -> dict[str, Any]:
    """Compute palette and tonal statistics for an RGB frame.

    Returns:
        Dict with ``dominant_colors`` (hex strings with pixel share),
        ``brightness``, ``contrast`` and ``saturation`` in [0, 1].
    """
    image = Image.fromarray(rgb)
    image.thumbnail((ANALYSIS_MAX_SIDE, ANALYSIS_MAX_SIDE))

    quantized = image.quantize(colors=palette_size, method=Image.Quantize.MEDIANCUT)
    palette = quantized.getpalette() or []
    counts = sorted(quantized.getcolors() or [], reverse=True)
    total = sum(count for count, _ in counts) or 1
    dominant_colors = []
    for count, index in counts[:palette_size]:
        r, g, b = palette[index * 3:index * 3 + 3]
        dominant_colors.append({"hex": f"#{r:02x}{g:02x}{b:02x}", "share": round(count / total, 4)})

    pixels = np.asarray(image, dtype=np.float64) / 255.0
    luma = pixels @ np.array([0.299, 0.587, 0.114])
    hsv = np.asarray(image.convert("HSV"), dtype=np.float64) / 255.0

    return {
        "dominant_colors": dominant_colors,
        "brightness": round(float(luma.mean()), 4),
        "contrast": round(float(luma.std()), 4),
        "saturation": round(float(hsv[..., 1].mean()), 4),
    }


class StyleReferenceService:
    """Create, analyze and apply style references."""

    def __init__(
        self,
        fetcher: MediaFetcher,
        style_transfer: Optional[StyleTransferModel] = None,
    ):
        self._fetcher = fetcher
        self._style_transfer = style_transfer

    async def create_from_image(
        self,
        image_url: str,
        image_bytes: Optional[bytes] = None,
    ) -> StyleReference:
        if image_bytes is None:
            image_bytes = await self._fetcher.fetch(image_url)
        width, height = image_size(image_bytes)
        return StyleReference(
            id=new_id("style"),
            frame_url=image_url,
            frame_timestamp=0.0,
            resolution=Resolution(width=width, height=height),
            aspect_ratio=aspect_ratio_label(width, height),
        )

    def create_from_frame(self, video_id: str, frame: ExtractedFrame) -> StyleReference:
        return StyleReference(
            id=new_id("style"),
            source_video_id=video_id,
            frame_url=frame.frame_url,
            frame_timestamp=frame.frame_timestamp,
            resolution=frame.resolution,
            aspect_ratio=frame.aspect_ratio,
        )

    async def analyze_style_reference(
        self,
        reference: StyleReference,
        image_bytes: Optional[bytes] = None,
    ) -> StyleReference:
        """Return a copy of ``reference`` with ``analysis_metadata`` filled in.

        Analysis is best effort; on failure the reference is returned as is.
        """
        try:
            if image_bytes is None:
                image_bytes = await self._fetcher.fetch(reference.frame_url)
            rgb = decode_rgb(image_bytes)
            metadata = await asyncio.to_thread(analyze_pixels, rgb)
        except Exception as e:
            logger.warning(f"Style analysis failed for {reference.id}: {e}")
            return reference
        return reference.model_copy(update={"analysis_metadata": metadata})

    async def generate_styled_keyframe(
        self,
        prompt: str,
        style_reference_url: str,
        strength: float,
        aspect_ratio: Optional[str] = None,
    ) -> str:
        """Synthesize a keyframe in the reference's style (IP-Adapter).

        Raises:
            StyleTransferUnavailableError: If no style-transfer model is
                configured or synthesis fails.
        """
        if self._style_transfer is None:
            raise StyleTransferUnavailableError("No style-transfer model is configured")
        try:
            return await self._style_transfer.generate_keyframe(
                prompt,
                style_reference_url,
                strength,
                coerce_aspect_ratio(aspect_ratio),
            )
        except Exception as e:
            raise StyleTransferUnavailableError(f"Style keyframe generation failed (IP-Adapter). {e}") from e
