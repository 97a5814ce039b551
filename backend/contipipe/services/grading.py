"""Post-hoc color grading toward a style reference.

Uses a Reinhard-style per-channel mean/std transfer. For still images the
transfer is applied with numpy; for clips the gain/offset computed from the
clip's midpoint frame is applied to every frame with ffmpeg's lutrgb filter.

Grading is best effort: every failure is logged and reported as
``applied=False`` so the caller can continue with the ungraded output.
"""

import asyncio
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

import numpy as np
from pydantic import BaseModel

from contipipe.errors import MediaExtractionUnavailableError
from contipipe.services.collaborators import ObjectStorage
from contipipe.services.frame_extraction import FrameBridgeService, ffmpeg_input
from contipipe.services.media_io import MediaFetcher, decode_rgb, encode_png

logger = logging.getLogger(__name__)

# Clamp per-channel gain so near-flat frames do not blow out
MIN_GAIN = 0.5
MAX_GAIN = 2.0


class ColorTransfer(BaseModel):
    gain: tuple[float, float, float]
    offset: tuple[float, float, float]

    @property
    def is_identity(self) -> bool:
        return all(abs(g - 1.0) < 1e-3 for g in self.gain) and all(abs(o) < 0.5 for o in self.offset)


class ImageGradeResult(BaseModel):
    applied: bool
    image_url: Optional[str] = None
    error: Optional[str] = None


class VideoGradeResult(BaseModel):
    applied: bool
    asset_id: Optional[str] = None
    video_url: Optional[str] = None
    error: Optional[str] = None


def compute_color_transfer(source: np.ndarray, reference: np.ndarray) -> ColorTransfer:
    """Per-channel gain/offset mapping ``source`` statistics onto ``reference``."""
    src = source[..., :3].reshape(-1, 3).astype(np.float64)
    ref = reference[..., :3].reshape(-1, 3).astype(np.float64)
    src_mean, src_std = src.mean(axis=0), src.std(axis=0)
    ref_mean, ref_std = ref.mean(axis=0), ref.std(axis=0)

    gain = np.where(src_std > 1e-6, ref_std / np.maximum(src_std, 1e-6), 1.0)
    gain = np.clip(gain, MIN_GAIN, MAX_GAIN)
    offset = ref_mean - gain * src_mean
    return ColorTransfer(
        gain=tuple(round(float(g), 4) for g in gain),
        offset=tuple(round(float(o), 4) for o in offset),
    )


def apply_color_transfer(pixels: np.ndarray, transfer: ColorTransfer) -> np.ndarray:
    rgb = pixels[..., :3].astype(np.float64)
    graded = rgb * np.array(transfer.gain) + np.array(transfer.offset)
    out = pixels.copy()
    out[..., :3] = np.clip(np.rint(graded), 0, 255).astype(np.uint8)
    return out


def lutrgb_filter(transfer: ColorTransfer) -> str:
    """ffmpeg lutrgb expression applying ``transfer`` to every frame."""
    parts = [
        f"{channel}='clip(val*{gain:.4f}+{offset:.4f},0,255)'"
        for channel, gain, offset in zip("rgb", transfer.gain, transfer.offset)
    ]
    return "lutrgb=" + ":".join(parts)


def _grade_video_file(ffmpeg_bin: str, video_url: str, transfer: ColorTransfer, output: Path) -> bytes:
    args = [
        ffmpeg_bin,
        "-v", "error",
        "-y",
        "-i", ffmpeg_input(video_url),
        "-vf", lutrgb_filter(transfer),
        "-c:a", "copy",
        str(output),
    ]
    try:
        subprocess.run(args, capture_output=True, check=True)
    except FileNotFoundError as e:
        raise MediaExtractionUnavailableError(ffmpeg_bin) from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace") if e.stderr else "No error output"
        raise RuntimeError(f"ffmpeg grading failed: {stderr[:500]}") from e
    return output.read_bytes()


class GradingService:
    """Match generated images and clips to a reference palette."""

    def __init__(
        self,
        fetcher: MediaFetcher,
        storage: ObjectStorage,
        frames: FrameBridgeService,
        tmp_dir: Optional[Path] = None,
        ffmpeg_bin: str = "ffmpeg",
    ):
        self._fetcher = fetcher
        self._storage = storage
        self._frames = frames
        self._tmp_dir = tmp_dir
        self._ffmpeg_bin = ffmpeg_bin

    async def match_image_palette(
        self,
        user_id: str,
        image_url: str,
        reference_url: str,
    ) -> ImageGradeResult:
        try:
            image_bytes, reference_bytes = await asyncio.gather(
                self._fetcher.fetch(image_url),
                self._fetcher.fetch(reference_url),
            )
            source = decode_rgb(image_bytes)
            transfer = compute_color_transfer(source, decode_rgb(reference_bytes))
            graded = await asyncio.to_thread(apply_color_transfer, source, transfer)
            stored = await self._storage.save_from_buffer(
                user_id,
                encode_png(graded),
                "KEYFRAME",
                "image/png",
                {"source": "palette-match", "original_url": image_url},
            )
        except Exception as e:
            logger.warning(f"Image palette match failed: {e}")
            return ImageGradeResult(applied=False, error=str(e))

        return ImageGradeResult(applied=True, image_url=stored.view_url)

    async def match_palette(
        self,
        user_id: str,
        asset_id: str,
        video_url: str,
        reference_url: str,
    ) -> VideoGradeResult:
        """Grade a generated clip toward the reference frame's palette."""
        try:
            frame_bytes, reference_bytes = await asyncio.gather(
                self._frames.extract_midpoint_frame(video_url),
                self._fetcher.fetch(reference_url),
            )
            transfer = compute_color_transfer(decode_rgb(frame_bytes), decode_rgb(reference_bytes))
            if transfer.is_identity:
                return VideoGradeResult(applied=False, asset_id=asset_id, video_url=video_url)

            with tempfile.TemporaryDirectory(dir=self._tmp_dir) as workdir:
                graded_bytes = await asyncio.to_thread(
                    _grade_video_file,
                    self._ffmpeg_bin,
                    video_url,
                    transfer,
                    Path(workdir) / "graded.mp4",
                )
            stored = await self._storage.save_from_buffer(
                user_id,
                graded_bytes,
                "VIDEO",
                "video/mp4",
                {"source": "palette-match", "original_asset_id": asset_id},
            )
        except Exception as e:
            logger.warning(f"Palette match for asset {asset_id} failed: {e}")
            return VideoGradeResult(applied=False, error=str(e))

        logger.info(f"Graded asset {asset_id} -> {stored.id} (gain={transfer.gain})")
        return VideoGradeResult(applied=True, asset_id=stored.id, video_url=stored.view_url)
