"""Continuity quality gate.

Scores a generated clip against its anchor:

- style: cosine similarity of perceptual (CLIP) embeddings between the
  reference image and the clip's midpoint frame, mapped to [0, 1]. Without
  an embedding model, or if it fails, a 32-bin-per-channel RGB histogram
  correlation is used instead.
- identity: cosine similarity of ArcFace embeddings between the character
  reference and the midpoint frame. Skipped when no face model is
  configured or the reference has no detectable face.

``passed`` requires every computed score to meet its threshold.
"""

import asyncio
import logging
from typing import Optional

import numpy as np
from pydantic import BaseModel

from contipipe.services.collaborators import FaceEmbeddingModel, ImageEmbeddingModel
from contipipe.services.frame_extraction import FrameBridgeService
from contipipe.services.media_io import MediaFetcher, decode_rgb

logger = logging.getLogger(__name__)

DEFAULT_STYLE_THRESHOLD = 0.75
DEFAULT_IDENTITY_THRESHOLD = 0.6
DEFAULT_HISTOGRAM_BINS = 32


class QualityGateRequest(BaseModel):
    reference_image_url: str
    generated_video_url: str
    character_reference_url: Optional[str] = None
    style_threshold: float = DEFAULT_STYLE_THRESHOLD
    identity_threshold: float = DEFAULT_IDENTITY_THRESHOLD


class QualityGateResult(BaseModel):
    style_score: Optional[float] = None
    identity_score: Optional[float] = None
    passed: bool


def embedding_similarity(emb1: np.ndarray, emb2: np.ndarray) -> float:
    """Cosine similarity mapped from [-1, 1] to [0, 1]."""
    denom = float(np.linalg.norm(emb1) * np.linalg.norm(emb2))
    if denom == 0.0:
        return 0.0
    cosine = float(np.dot(emb1, emb2)) / denom
    return float(np.clip((cosine + 1.0) / 2.0, 0.0, 1.0))


def histogram_similarity(
    reference: np.ndarray,
    candidate: np.ndarray,
    bins: int = DEFAULT_HISTOGRAM_BINS,
) -> float:
    """Pearson correlation of per-channel RGB histograms mapped to [0, 1].

    Never raises; inputs that cannot be compared score 0.0.
    """
    try:
        hists = []
        for image in (reference, candidate):
            channels = [
                np.histogram(image[..., c], bins=bins, range=(0, 256))[0].astype(np.float64)
                for c in range(3)
            ]
            combined = np.concatenate(channels)
            hists.append(combined / max(combined.sum(), 1.0))
        a, b = hists
        if a.std() == 0.0 or b.std() == 0.0:
            return 1.0 if np.allclose(a, b) else 0.0
        correlation = float(np.corrcoef(a, b)[0, 1])
        if not np.isfinite(correlation):
            return 0.0
        return float(np.clip((correlation + 1.0) / 2.0, 0.0, 1.0))
    except Exception as e:
        logger.warning(f"Histogram similarity failed: {e}")
        return 0.0


def gate_passed(
    style_score: Optional[float],
    identity_score: Optional[float],
    style_threshold: float,
    identity_threshold: float,
) -> bool:
    style_ok = style_score is None or style_score >= style_threshold
    identity_ok = identity_score is None or identity_score >= identity_threshold
    return style_ok and identity_ok


class QualityGateService:
    """Evaluate generated clips against their continuity anchor."""

    def __init__(
        self,
        frames: FrameBridgeService,
        fetcher: MediaFetcher,
        embedding_model: Optional[ImageEmbeddingModel] = None,
        face_model: Optional[FaceEmbeddingModel] = None,
        histogram_bins: int = DEFAULT_HISTOGRAM_BINS,
    ):
        self._frames = frames
        self._fetcher = fetcher
        self._embedding_model = embedding_model
        self._face_model = face_model
        self._histogram_bins = histogram_bins

    def compute_style_score(self, reference_bytes: bytes, frame_bytes: bytes) -> float:
        if self._embedding_model is not None:
            try:
                return embedding_similarity(
                    self._embedding_model.embed(reference_bytes),
                    self._embedding_model.embed(frame_bytes),
                )
            except Exception as e:
                logger.warning(f"Embedding model unavailable, using histogram fallback: {e}")
        try:
            reference, frame = decode_rgb(reference_bytes), decode_rgb(frame_bytes)
        except Exception as e:
            logger.warning(f"Cannot decode images for histogram comparison: {e}")
            return 0.0
        return histogram_similarity(reference, frame, self._histogram_bins)

    def compute_identity_score(self, reference_bytes: bytes, frame_bytes: bytes) -> Optional[float]:
        """Return face similarity, or None when identity cannot be checked."""
        if self._face_model is None:
            return None
        try:
            reference = self._face_model.extract_embedding(reference_bytes)
        except ValueError:
            logger.warning("No face in character reference; identity check skipped")
            return None
        except Exception as e:
            logger.warning(f"Face model unavailable, identity check skipped: {e}")
            return None

        try:
            generated = self._face_model.extract_embedding(frame_bytes)
        except ValueError:
            # The character is missing from the generated frame
            return 0.0
        similarity = self._face_model.compute_similarity(reference, generated)
        return float(max(0.0, min(1.0, similarity)))

    async def evaluate(self, request: QualityGateRequest) -> QualityGateResult:
        frame_bytes = await self._frames.extract_midpoint_frame(request.generated_video_url)
        reference_bytes = await self._fetcher.fetch(request.reference_image_url)
        style_score = await asyncio.to_thread(self.compute_style_score, reference_bytes, frame_bytes)

        identity_score = None
        if request.character_reference_url and self._face_model is not None:
            character_bytes = await self._fetcher.fetch(request.character_reference_url)
            identity_score = await asyncio.to_thread(
                self.compute_identity_score, character_bytes, frame_bytes
            )

        passed = gate_passed(
            style_score, identity_score, request.style_threshold, request.identity_threshold
        )
        logger.info(
            f"Quality gate: style={style_score:.3f} identity="
            f"{'n/a' if identity_score is None else f'{identity_score:.3f}'} passed={passed}"
        )
        return QualityGateResult(style_score=style_score, identity_score=identity_score, passed=passed)
