"""Depth-parallax scene proxies.

A scene proxy is a single reference frame plus a depth map. Re-rendering it
from a slightly different virtual camera (yaw/pitch) gives a start image for
a new shot of the same location without another video generation call.

Depth convention: 8-bit depth maps where larger values are nearer the
camera (MiDaS inverse depth). When no depth model is configured, or it
fails, the frame's luminance is used instead.
"""

import asyncio
import logging
from typing import Optional

import numpy as np

from contipipe.schemas.continuity import CameraPose, SceneProxy, SceneProxyRender, new_id
from contipipe.services.collaborators import DepthEstimator, ObjectStorage
from contipipe.services.frame_extraction import FrameBridgeService
from contipipe.services.media_io import (
    MediaFetcher,
    decode_grayscale,
    decode_rgb,
    decode_rgba,
    encode_png,
    image_size,
)

logger = logging.getLogger(__name__)

DEPTH_BUCKETS = 256
DEFAULT_PARALLAX_SCALE = 0.05
DEFAULT_VARIANCE_THRESHOLD = 0.005
VARIANCE_SAMPLE_SIZE = (128, 128)
HOLE_FILL_PASSES = 2

# Neighbour offsets (dy, dx) tried in order when filling holes: left, right, up, down
_NEIGHBOURS = ((0, -1), (0, 1), (-1, 0), (1, 0))


# ---------------------------------------------------------------------------
# Pure image functions
# ---------------------------------------------------------------------------


def normalize_depth(depth: np.ndarray) -> np.ndarray:
    """Scale an arbitrary depth array to uint8 [0, 255]."""
    depth = np.asarray(depth, dtype=np.float64)
    low, high = float(depth.min()), float(depth.max())
    span = (high - low) or 1.0
    return np.clip((depth - low) / span * 255.0, 0, 255).astype(np.uint8)


def luminance_depth(rgb: np.ndarray) -> np.ndarray:
    """Fallback depth: brighter pixels are treated as nearer."""
    weights = np.array([0.299, 0.587, 0.114])
    luma = rgb[..., :3].astype(np.float64) @ weights
    return np.clip(np.rint(luma), 0, 255).astype(np.uint8)


def depth_variance(depth: np.ndarray) -> float:
    """Variance of a uint8 depth map in [0, 1] units."""
    values = depth.astype(np.float64) / 255.0
    return float(values.var())


def _neighbour(arr: np.ndarray, dy: int, dx: int) -> np.ndarray:
    """Return ``out[y, x] = arr[y + dy, x + dx]`` with zero padding."""
    pad = [(1, 1), (1, 1)] + [(0, 0)] * (arr.ndim - 2)
    padded = np.pad(arr, pad)
    h, w = arr.shape[:2]
    return padded[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]


def _fill_holes(pixels: np.ndarray, written: np.ndarray, passes: int) -> np.ndarray:
    for _ in range(passes):
        holes = ~written
        if not holes.any():
            break
        filled = pixels.copy()
        assigned = np.zeros_like(written)
        for dy, dx in _NEIGHBOURS:
            take = holes & ~assigned & _neighbour(written, dy, dx)
            filled[take] = _neighbour(pixels, dy, dx)[take]
            assigned |= take
        pixels = filled
        written = written | assigned
    return pixels


def render_parallax(
    rgba: np.ndarray,
    depth: np.ndarray,
    yaw: float = 0.0,
    pitch: float = 0.0,
    scale: float = DEFAULT_PARALLAX_SCALE,
) -> np.ndarray:
    """Re-project a frame by per-pixel depth parallax.

    Each pixel is shifted by ``(0.5 - d) * yaw * width * scale`` horizontally
    and ``(0.5 - d) * pitch * height * scale`` vertically, where ``d`` is its
    depth bucket in [0, 1]. A z-buffer keeps the nearest source pixel at each
    destination (ties keep the first pixel in raster order). Destinations
    that receive nothing are filled from written neighbours in two passes.

    Args:
        rgba: HxWxC uint8 image.
        depth: HxW uint8 depth map, same size as ``rgba``.

    Returns:
        HxWxC uint8 image. With yaw=0 and pitch=0 this equals ``rgba``.
    """
    if depth.shape != rgba.shape[:2]:
        raise ValueError(f"Depth map shape {depth.shape} does not match image {rgba.shape[:2]}")

    height, width = depth.shape
    channels = rgba.shape[2]
    buckets = depth.astype(np.int64).ravel()
    depth_norm = buckets / (DEPTH_BUCKETS - 1)

    ys, xs = np.divmod(np.arange(height * width), width)
    shift_x = (0.5 - depth_norm) * yaw * width * scale
    shift_y = (0.5 - depth_norm) * pitch * height * scale
    # Round half up
    nx = np.floor(xs + shift_x + 0.5).astype(np.int64)
    ny = np.floor(ys + shift_y + 0.5).astype(np.int64)

    inside = (nx >= 0) & (ny >= 0) & (nx < width) & (ny < height)
    sources = np.flatnonzero(inside)
    targets = ny[sources] * width + nx[sources]

    # Winner per target: highest depth, then lowest source index
    order = np.lexsort((sources, -buckets[sources], targets))
    targets_sorted = targets[order]
    _, first = np.unique(targets_sorted, return_index=True)
    winners = order[first]

    flat = rgba.reshape(-1, channels)
    out = np.zeros_like(flat)
    written = np.zeros(height * width, dtype=bool)
    out[targets[winners]] = flat[sources[winners]]
    written[targets[winners]] = True

    return _fill_holes(
        out.reshape(height, width, channels),
        written.reshape(height, width),
        HOLE_FILL_PASSES,
    )


def render_parallax_png(
    image_bytes: bytes,
    depth_bytes: bytes,
    pose: Optional[CameraPose] = None,
    scale: float = DEFAULT_PARALLAX_SCALE,
) -> bytes:
    rgba = decode_rgba(image_bytes)
    height, width = rgba.shape[:2]
    depth = decode_grayscale(depth_bytes, size=(width, height))
    pose = pose or CameraPose()
    rendered = render_parallax(rgba, depth, yaw=pose.yaw, pitch=pose.pitch, scale=scale)
    return encode_png(rendered)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class SceneProxyService:
    """Build scene proxies from clips and render them from new camera poses."""

    def __init__(
        self,
        frames: FrameBridgeService,
        storage: ObjectStorage,
        fetcher: MediaFetcher,
        depth_estimator: Optional[DepthEstimator] = None,
        variance_threshold: float = DEFAULT_VARIANCE_THRESHOLD,
        parallax_scale: float = DEFAULT_PARALLAX_SCALE,
    ):
        self._frames = frames
        self._storage = storage
        self._fetcher = fetcher
        self._depth_estimator = depth_estimator
        self.variance_threshold = variance_threshold
        self.parallax_scale = parallax_scale

    def estimate_depth(self, image_bytes: bytes) -> np.ndarray:
        """Return a uint8 depth map, falling back to luminance."""
        if self._depth_estimator is not None:
            try:
                return normalize_depth(self._depth_estimator.estimate(image_bytes))
            except Exception as e:
                logger.warning(f"Depth estimation failed, using luminance fallback: {e}")
        return luminance_depth(decode_rgb(image_bytes))

    async def create_proxy_from_video(self, user_id: str, video_id: str, video_url: str) -> SceneProxy:
        """Build a proxy from the sharpest frame of a clip.

        Never raises: failures are reported as a proxy with status "failed".
        """
        try:
            frame = await self._frames.extract_representative_frame(
                user_id, video_id, video_url, "scene-proxy"
            )
            depth = await asyncio.to_thread(self.estimate_depth, frame.image_bytes)
            depth_png = encode_png(depth)
            stored = await self._storage.save_from_buffer(
                user_id,
                depth_png,
                "PREVIEW_IMAGE",
                "image/png",
                {"source": "scene-proxy-depth", "video_id": video_id},
            )

            sample = decode_grayscale(depth_png, size=VARIANCE_SAMPLE_SIZE)
            variance = depth_variance(sample)
            if variance < self.variance_threshold:
                logger.warning(
                    f"Scene proxy for {video_id} rejected: depth variance {variance:.5f} "
                    f"< {self.variance_threshold}"
                )
                return SceneProxy(
                    id=new_id("proxy"),
                    source_video_id=video_id,
                    reference_frame_url=frame.frame_url,
                    depth_map_url=stored.view_url,
                    status="failed",
                    error="Insufficient parallax depth for scene proxy.",
                )

            logger.info(f"Scene proxy ready for {video_id} (depth variance {variance:.4f})")
            return SceneProxy(
                id=new_id("proxy"),
                source_video_id=video_id,
                reference_frame_url=frame.frame_url,
                depth_map_url=stored.view_url,
                status="ready",
            )
        except Exception as e:
            logger.error(f"Scene proxy creation failed for {video_id}: {e}")
            return SceneProxy(
                id=new_id("proxy"),
                source_video_id=video_id,
                status="failed",
                error=str(e),
            )

    async def render_from_proxy(
        self,
        user_id: str,
        proxy: SceneProxy,
        shot_id: str,
        camera: Optional[CameraPose] = None,
    ) -> SceneProxyRender:
        """Render the proxy from ``camera`` and store the result.

        Raises:
            ValueError: If the proxy has no reference frame or depth map.
        """
        if not proxy.reference_frame_url or not proxy.depth_map_url:
            raise ValueError("Scene proxy is missing reference assets")

        image_bytes, depth_bytes = await asyncio.gather(
            self._fetcher.fetch(proxy.reference_frame_url),
            self._fetcher.fetch(proxy.depth_map_url),
        )
        rendered = await asyncio.to_thread(
            render_parallax_png, image_bytes, depth_bytes, camera, self.parallax_scale
        )
        stored = await self._storage.save_from_buffer(
            user_id,
            rendered,
            "PREVIEW_IMAGE",
            "image/png",
            {"source": "scene-proxy-render", "proxy_id": proxy.id, "shot_id": shot_id},
        )

        width, height = image_size(rendered)
        logger.info(
            f"Rendered scene proxy {proxy.id} for shot {shot_id} ({width}x{height}, "
            f"yaw={camera.yaw if camera else 0}, pitch={camera.pitch if camera else 0})"
        )
        return SceneProxyRender(
            id=new_id("render"),
            proxy_id=proxy.id,
            shot_id=shot_id,
            render_url=stored.view_url,
            camera_pose=camera,
        )
