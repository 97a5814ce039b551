"""Single-frame extraction from generated clips.

Provides:
- FfmpegFrameExtractor: ffmpeg/ffprobe-backed FrameExtractor
- FrameBridgeService: bridge frames (first/last) and the sharpest of N
  evenly spaced candidates as a clip's representative frame

ffmpeg runs in a worker thread (subprocess is blocking). cv2 is imported
inside functions to avoid import failures if opencv is not installed.
"""

import asyncio
import logging
import subprocess
from typing import Optional
from urllib.parse import unquote, urlparse

from pydantic import BaseModel, Field

from contipipe.errors import MediaExtractionUnavailableError
from contipipe.schemas.continuity import FrameBridge, FramePosition, Resolution, new_id
from contipipe.services.collaborators import FrameExtractor, ObjectStorage
from contipipe.services.media_io import aspect_ratio_label, decode_grayscale, image_size

logger = logging.getLogger(__name__)

# Offset from the end of the clip for "last" bridge frames; the final
# decoded frame is frequently a duplicate or partially encoded.
LAST_FRAME_OFFSET_SECONDS = 0.1


def ffmpeg_input(video_url: str) -> str:
    parsed = urlparse(video_url)
    if parsed.scheme == "file":
        return unquote(parsed.path)
    return video_url


def _run_tool(args: list[str]) -> bytes:
    """Run ffmpeg/ffprobe and return stdout.

    Raises:
        MediaExtractionUnavailableError: If the binary is not installed.
        RuntimeError: If the tool exits non-zero.
    """
    try:
        result = subprocess.run(args, capture_output=True, check=True)
    except FileNotFoundError as e:
        raise MediaExtractionUnavailableError(args[0]) from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace") if e.stderr else "No error output"
        raise RuntimeError(f"{args[0]} failed: {stderr[:500]}") from e
    return result.stdout


class FfmpegFrameExtractor(FrameExtractor):
    """Frame extraction via the ffmpeg command-line tools."""

    def __init__(self, ffmpeg_bin: str = "ffmpeg", ffprobe_bin: str = "ffprobe"):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin

    async def extract_frame_at(self, video_url: str, timestamp_seconds: float) -> bytes:
        args = [
            self.ffmpeg_bin,
            "-v", "error",
            "-ss", f"{max(0.0, timestamp_seconds):.3f}",
            "-i", ffmpeg_input(video_url),
            "-frames:v", "1",
            "-f", "image2pipe",
            "-vcodec", "png",
            "-",
        ]
        data = await asyncio.to_thread(_run_tool, args)
        if not data:
            raise RuntimeError(f"No frame decoded at {timestamp_seconds:.2f}s from {video_url}")
        return data

    async def probe_duration(self, video_url: str) -> float:
        args = [
            self.ffprobe_bin,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            ffmpeg_input(video_url),
        ]
        output = await asyncio.to_thread(_run_tool, args)
        try:
            return float(output.decode().strip())
        except ValueError as e:
            raise RuntimeError(f"Could not read duration of {video_url}") from e


def frame_sharpness(image_bytes: bytes) -> float:
    """Variance of the Laplacian; higher means sharper."""
    import cv2

    gray = decode_grayscale(image_bytes)
    return float(cv2.Laplacian(gray, cv2.CV_64F).var())


def candidate_timestamps(duration: float, count: int) -> list[float]:
    """Evenly spaced timestamps strictly inside the clip."""
    if duration <= 0:
        return [0.0]
    return [duration * (i + 1) / (count + 1) for i in range(count)]


class ExtractedFrame(BaseModel):
    """A frame pulled from a clip and stored."""

    frame_url: str
    frame_timestamp: float
    resolution: Resolution
    aspect_ratio: str
    sharpness: Optional[float] = None
    image_bytes: bytes = Field(default=b"", exclude=True, repr=False)


class FrameBridgeService:
    """Extract bridge and representative frames and store them."""

    def __init__(
        self,
        extractor: FrameExtractor,
        storage: ObjectStorage,
        representative_candidates: int = 5,
    ):
        self._extractor = extractor
        self._storage = storage
        self._representative_candidates = representative_candidates

    async def extract_midpoint_frame(self, video_url: str) -> bytes:
        duration = await self._extractor.probe_duration(video_url)
        return await self._extractor.extract_frame_at(video_url, duration / 2.0)

    async def _store_frame(
        self,
        user_id: str,
        frame_bytes: bytes,
        timestamp: float,
        metadata: dict,
        sharpness: Optional[float] = None,
    ) -> ExtractedFrame:
        width, height = image_size(frame_bytes)
        stored = await self._storage.save_from_buffer(
            user_id, frame_bytes, "FRAME", "image/png", metadata
        )
        return ExtractedFrame(
            frame_url=stored.view_url,
            frame_timestamp=timestamp,
            resolution=Resolution(width=width, height=height),
            aspect_ratio=aspect_ratio_label(width, height),
            sharpness=sharpness,
            image_bytes=frame_bytes,
        )

    async def extract_bridge_frame(
        self,
        user_id: str,
        video_id: str,
        video_url: str,
        shot_id: str,
        position: FramePosition = "last",
    ) -> FrameBridge:
        """Extract the first or last frame of a shot's clip as a bridge."""
        if position == "last":
            duration = await self._extractor.probe_duration(video_url)
            timestamp = max(0.0, duration - LAST_FRAME_OFFSET_SECONDS)
        else:
            timestamp = 0.0

        frame_bytes = await self._extractor.extract_frame_at(video_url, timestamp)
        frame = await self._store_frame(
            user_id,
            frame_bytes,
            timestamp,
            {"source": "frame-bridge", "video_id": video_id, "shot_id": shot_id, "position": position},
        )
        logger.info(f"Extracted {position} bridge frame for shot {shot_id} at {timestamp:.2f}s")
        return FrameBridge(
            id=new_id("bridge"),
            source_video_id=video_id,
            source_shot_id=shot_id,
            frame_url=frame.frame_url,
            frame_position=position,
            frame_timestamp=timestamp,
            resolution=frame.resolution,
            aspect_ratio=frame.aspect_ratio,
        )

    async def extract_representative_frame(
        self,
        user_id: str,
        video_id: str,
        video_url: str,
        purpose: str,
    ) -> ExtractedFrame:
        """Pick the sharpest of N evenly spaced frames."""
        duration = await self._extractor.probe_duration(video_url)
        timestamps = candidate_timestamps(duration, self._representative_candidates)

        best: Optional[tuple[float, float, bytes]] = None
        for timestamp in timestamps:
            frame_bytes = await self._extractor.extract_frame_at(video_url, timestamp)
            score = await asyncio.to_thread(frame_sharpness, frame_bytes)
            if best is None or score > best[0]:
                best = (score, timestamp, frame_bytes)

        score, timestamp, frame_bytes = best
        logger.info(
            f"Representative frame for {video_id}: t={timestamp:.2f}s sharpness={score:.1f} "
            f"({len(timestamps)} candidates)"
        )
        return await self._store_frame(
            user_id,
            frame_bytes,
            timestamp,
            {"source": "representative", "video_id": video_id, "purpose": purpose},
            sharpness=score,
        )
