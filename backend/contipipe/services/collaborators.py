"""Abstract contracts for the external facilities the continuity engine uses.

Concrete video backends, image models, and object stores live outside this
package; the engine only depends on these interfaces and receives
implementations through constructors. Network-bound calls are async;
CPU-bound model inference is sync and is run via asyncio.to_thread by
callers.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field


class GenerationResult(BaseModel):
    """Result returned by a video generation backend."""

    model_config = ConfigDict(extra="allow")

    asset_id: str
    video_url: str
    seed: Optional[int] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class StoredObject(BaseModel):
    id: str
    view_url: str
    mime_type: str
    size_bytes: int = 0


class CharacterAsset(BaseModel):
    id: str
    primary_image_url: str
    face_embedding: Optional[list[float]] = None


class VideoGenerationBackend(ABC):
    """Contract for text/image-to-video backends."""

    @abstractmethod
    async def generate_video(self, prompt: str, options: dict[str, Any]) -> GenerationResult:
        """Generate a clip and block until the asset is available.

        ``options`` always carries ``model`` and may carry ``startImage``,
        ``seed``, ``characterAssetId``, ``autoKeyframe`` and provider-specific
        style reference keys.
        """
        ...

    @abstractmethod
    async def get_video_url(self, asset_id: str) -> Optional[str]:
        ...


class ObjectStorage(ABC):
    """Contract for durable blob storage with viewable URLs."""

    @abstractmethod
    async def save_from_buffer(
        self,
        user_id: str,
        buffer: bytes,
        storage_type: str,
        mime_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StoredObject:
        ...

    @abstractmethod
    async def get_view_url(self, object_id: str) -> Optional[str]:
        ...


class FrameExtractor(ABC):
    """Contract for pulling single frames out of a video."""

    @abstractmethod
    async def extract_frame_at(self, video_url: str, timestamp_seconds: float) -> bytes:
        """Return PNG bytes for the frame at ``timestamp_seconds``.

        Raises:
            MediaExtractionUnavailableError: If the extraction tool is missing.
        """
        ...

    @abstractmethod
    async def probe_duration(self, video_url: str) -> float:
        ...


class ImageEmbeddingModel(ABC):
    """Perceptual image embedding (e.g. CLIP). Optional collaborator."""

    @abstractmethod
    def embed(self, image_bytes: bytes) -> np.ndarray:
        ...


class FaceEmbeddingModel(ABC):
    """Face identity embedding (e.g. ArcFace). Optional collaborator."""

    @abstractmethod
    def extract_embedding(self, image_bytes: bytes) -> np.ndarray:
        """Raises ValueError if no face is found."""
        ...

    @abstractmethod
    def compute_similarity(self, emb1: np.ndarray, emb2: np.ndarray) -> float:
        ...


class DepthEstimator(ABC):
    """Monocular depth estimation returning a 2-D float array."""

    @abstractmethod
    def estimate(self, image_bytes: bytes) -> np.ndarray:
        ...


class StyleTransferModel(ABC):
    """Image-conditioned keyframe synthesis (IP-Adapter style transfer)."""

    @abstractmethod
    async def generate_keyframe(
        self,
        prompt: str,
        style_image_url: str,
        strength: float,
        aspect_ratio: Optional[str] = None,
    ) -> str:
        """Return the URL of the synthesized keyframe."""
        ...


class FaceConsistencyModel(ABC):
    """Identity-preserving keyframe synthesis (PuLID)."""

    @abstractmethod
    async def generate_keyframe(
        self,
        prompt: str,
        face_image_url: str,
        face_strength: float,
        aspect_ratio: Optional[str] = None,
    ) -> str:
        ...


class CharacterAssetLookup(ABC):
    @abstractmethod
    async def get_asset_for_generation(self, user_id: str, asset_id: str) -> CharacterAsset:
        """Raises:
            LookupError: If the user has no asset with this id.
        """
        ...
