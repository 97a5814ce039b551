"""Tests for depth-parallax rendering and scene proxy creation."""

import numpy as np
import pytest

from contipipe.schemas.continuity import CameraPose
from contipipe.services.frame_extraction import FrameBridgeService
from contipipe.services.media_io import MediaFetcher, decode_rgba, image_size
from contipipe.services.scene_proxy import (
    SceneProxyService,
    depth_variance,
    luminance_depth,
    normalize_depth,
    render_parallax,
)
from contipipe.services.storage import LocalObjectStorage

from conftest import USER_ID, FakeFrameExtractor, gradient_png, solid_png


def _colors(n: int) -> np.ndarray:
    pixels = np.zeros((1, n, 4), dtype=np.uint8)
    for i in range(n):
        pixels[0, i] = (10 * (i + 1), 20 * (i + 1), 30 * (i + 1), 255)
    return pixels


def test_zero_pose_is_identity():
    rng = np.random.default_rng(0)
    rgba = rng.integers(0, 256, size=(12, 16, 4), dtype=np.uint8)
    depth = rng.integers(0, 256, size=(12, 16), dtype=np.uint8)

    out = render_parallax(rgba, depth, yaw=0.0, pitch=0.0)

    np.testing.assert_array_equal(out, rgba)


def test_nearest_pixel_wins_and_holes_are_filled():
    rgba = _colors(4)
    # Pixel 2 is near and moves left onto the same target as far pixel 0
    depth = np.array([[0, 0, 255, 0]], dtype=np.uint8)

    out = render_parallax(rgba, depth, yaw=1.0, pitch=0.0, scale=0.5)

    # target 1 <- pixel 2 (near beats far), target 2 <- pixel 1,
    # holes at 0 and 3 are filled from their written neighbours
    expected = rgba[0, [2, 2, 1, 1]]
    np.testing.assert_array_equal(out[0], expected)


def test_mismatched_depth_shape_raises():
    with pytest.raises(ValueError):
        render_parallax(np.zeros((4, 4, 4), dtype=np.uint8), np.zeros((3, 4), dtype=np.uint8))


def test_depth_helpers():
    flat = np.full((8, 8), 128, dtype=np.uint8)
    assert depth_variance(flat) == 0.0

    normalized = normalize_depth(np.array([[1.0, 3.0], [2.0, 3.0]]))
    assert normalized.min() == 0
    assert normalized.max() == 255

    white = np.full((2, 2, 3), 255, dtype=np.uint8)
    assert (luminance_depth(white) == 255).all()


@pytest.fixture
def storage(tmp_path):
    return LocalObjectStorage(tmp_path / "objects")


def _proxy_service(storage, frame_bytes, **kwargs) -> SceneProxyService:
    frames = FrameBridgeService(FakeFrameExtractor(frame_bytes), storage, representative_candidates=3)
    return SceneProxyService(frames, storage, MediaFetcher(), **kwargs)


async def test_flat_frame_is_rejected_for_insufficient_depth(storage):
    service = _proxy_service(storage, solid_png((90, 90, 90)))

    proxy = await service.create_proxy_from_video(USER_ID, "video-1", "file:///videos/video-1.mp4")

    assert proxy.status == "failed"
    assert proxy.error == "Insufficient parallax depth for scene proxy."
    assert proxy.depth_map_url is not None


async def test_failed_extraction_yields_failed_proxy(storage):
    class BrokenExtractor(FakeFrameExtractor):
        async def probe_duration(self, video_url):
            raise RuntimeError("probe exploded")

    frames = FrameBridgeService(BrokenExtractor(b""), storage)
    service = SceneProxyService(frames, storage, MediaFetcher())

    proxy = await service.create_proxy_from_video(USER_ID, "video-1", "file:///videos/video-1.mp4")

    assert proxy.status == "failed"
    assert "probe exploded" in proxy.error


async def test_ready_proxy_renders_from_camera(storage):
    frame = gradient_png((64, 36))
    service = _proxy_service(storage, frame)

    proxy = await service.create_proxy_from_video(USER_ID, "video-1", "file:///videos/video-1.mp4")
    assert proxy.status == "ready"

    render = await service.render_from_proxy(USER_ID, proxy, "shot-1", CameraPose(yaw=0.0, pitch=0.0))

    rendered = await MediaFetcher().fetch(render.render_url)
    assert image_size(rendered) == (64, 36)
    np.testing.assert_array_equal(decode_rgba(rendered), decode_rgba(frame))
    assert render.proxy_id == proxy.id
    assert render.shot_id == "shot-1"


async def test_render_requires_assets(storage):
    service = _proxy_service(storage, gradient_png())
    proxy = await service.create_proxy_from_video(USER_ID, "video-1", "file:///videos/video-1.mp4")
    broken = proxy.model_copy(update={"depth_map_url": None})

    with pytest.raises(ValueError):
        await service.render_from_proxy(USER_ID, broken, "shot-1")
