"""Monocular depth estimation with a HuggingFace depth-estimation pipeline."""

import io
import logging
from typing import Optional

import numpy as np

from contipipe.services.collaborators import DepthEstimator

logger = logging.getLogger(__name__)


class TransformersDepthEstimator(DepthEstimator):
    """DPT/MiDaS depth via ``transformers.pipeline("depth-estimation")``.

    Returns depth normalized to [0, 1] where larger means nearer, matching
    MiDaS inverse-depth output.
    """

    def __init__(self, model_name: str = "Intel/dpt-hybrid-midas", device: Optional[str] = None):
        self.model_name = model_name
        self.device = device
        self._pipeline = None

    def _load_model(self) -> None:
        if self._pipeline is not None:
            return

        try:
            import torch
            from transformers import pipeline

            if self.device is None:
                self.device = "cuda" if torch.cuda.is_available() else "cpu"

            logger.info(f"Loading depth model ({self.model_name}) on device={self.device}...")
            self._pipeline = pipeline("depth-estimation", model=self.model_name, device=self.device)
            logger.info("Depth model loaded successfully")
        except Exception as e:
            logger.error(f"Failed to load depth model: {e}")
            raise RuntimeError(f"Failed to load depth model {self.model_name}: {e}") from e

    def estimate(self, image_bytes: bytes) -> np.ndarray:
        from PIL import Image

        self._load_model()

        image = Image.open(io.BytesIO(image_bytes)).convert("RGB")
        result = self._pipeline(image)
        depth = np.asarray(result["depth"], dtype=np.float32)
        if depth.shape != (image.height, image.width):
            resized = Image.fromarray(depth).resize(image.size, Image.Resampling.BILINEAR)
            depth = np.asarray(resized, dtype=np.float32)

        low, high = float(depth.min()), float(depth.max())
        if high - low <= 0:
            return np.zeros_like(depth)
        return (depth - low) / (high - low)
