"""Image download and pixel-buffer helpers shared by the continuity services.

Downloads go through a shared httpx client with tenacity retries on
transient errors (429, 5xx, connection failures). file:// URLs and plain
paths are read from disk.
"""

import asyncio
import io
import logging
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx
import numpy as np
from PIL import Image
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

# Aspect ratios accepted by downstream keyframe models
ASPECT_RATIOS = ("16:9", "9:16", "1:1", "4:3", "3:4")


def _is_retriable(exc: BaseException) -> bool:
    """Return True only for transient errors worth retrying (429, 5xx)."""
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        return code == 429 or code >= 500
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    return False


class MediaFetcher:
    """Fetch image or video bytes from http(s), file:// or local paths."""

    def __init__(self, timeout: float = 60.0, retry_attempts: int = 4):
        self._timeout = timeout
        self._retry_attempts = retry_attempts
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                timeout=httpx.Timeout(self._timeout, connect=30.0),
            )
        return self._client

    async def fetch(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            return await self._fetch_http(url)
        if parsed.scheme == "file":
            return await asyncio.to_thread(Path(unquote(parsed.path)).read_bytes)
        if parsed.scheme == "":
            return await asyncio.to_thread(Path(url).read_bytes)
        raise ValueError(f"Unsupported URL scheme: {parsed.scheme}")

    async def _fetch_http(self, url: str) -> bytes:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=20),
            retry=retry_if_exception(_is_retriable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                response = await self.client.get(url)
                response.raise_for_status()
                return response.content
        raise RuntimeError("unreachable")

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()


def decode_rgb(image_bytes: bytes) -> np.ndarray:
    """Decode image bytes into an HxWx3 uint8 array."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        return np.asarray(img.convert("RGB"), dtype=np.uint8).copy()


def decode_rgba(image_bytes: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(image_bytes)) as img:
        return np.asarray(img.convert("RGBA"), dtype=np.uint8).copy()


def decode_grayscale(image_bytes: bytes, size: Optional[tuple[int, int]] = None) -> np.ndarray:
    """Decode to an HxW uint8 array, optionally resized to ``size`` (w, h)."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        gray = img.convert("L")
        if size is not None and gray.size != size:
            gray = gray.resize(size, Image.Resampling.BILINEAR)
        return np.asarray(gray, dtype=np.uint8).copy()


def encode_png(pixels: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray(pixels).save(buffer, format="PNG")
    return buffer.getvalue()


def image_size(image_bytes: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(image_bytes)) as img:
        return img.size


def aspect_ratio_label(width: int, height: int) -> str:
    """Return the closest supported aspect ratio label for a resolution."""
    ratio = width / height
    return min(
        ASPECT_RATIOS,
        key=lambda label: abs(ratio - int(label.split(":")[0]) / int(label.split(":")[1])),
    )


def coerce_aspect_ratio(value: Optional[str]) -> Optional[str]:
    if value in ASPECT_RATIOS:
        return value
    return None
