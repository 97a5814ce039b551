"""CLIP perceptual embeddings for style similarity scoring.

Uses openai/clip-vit-base-patch32 by default (512-dim vectors). The model is
lazy-loaded on first use, not at import time.
"""

import io
import logging
from typing import Optional

import numpy as np

from contipipe.services.collaborators import ImageEmbeddingModel

logger = logging.getLogger(__name__)


class CLIPEmbeddingService(ImageEmbeddingModel):
    """CLIP image embeddings with lazy model loading."""

    def __init__(
        self,
        model_name: str = "openai/clip-vit-base-patch32",
        device: Optional[str] = None,
    ):
        """Initialize service.

        Args:
            model_name: HuggingFace model name to use for CLIP embeddings.
            device: Device for inference ("cuda", "cpu"). If None, auto-detects.
        """
        self.model_name = model_name
        self.device = device
        self._model = None
        self._processor = None

    def _load_model(self) -> None:
        """Lazy-load CLIPProcessor and CLIPModel on first use.

        Raises:
            RuntimeError: If model loading fails (network error, corrupt weights, etc.)
        """
        if self._model is not None:
            return

        try:
            import torch
            from transformers import CLIPModel, CLIPProcessor

            if self.device is None:
                self.device = "cuda" if torch.cuda.is_available() else "cpu"

            logger.info(f"Loading CLIP model ({self.model_name}) on device={self.device}...")
            self._processor = CLIPProcessor.from_pretrained(self.model_name)
            self._model = CLIPModel.from_pretrained(self.model_name).to(self.device)
            self._model.eval()
            logger.info("CLIP model loaded successfully")
        except Exception as e:
            logger.error(f"Failed to load CLIP model: {e}")
            raise RuntimeError(
                f"Failed to load CLIP model: {e}. Install the vision extra with: "
                "pip install 'contipipe[vision]'"
            ) from e

    def embed(self, image_bytes: bytes) -> np.ndarray:
        """Return a unit-length CLIP embedding for an encoded image."""
        import torch
        from PIL import Image

        self._load_model()

        image = Image.open(io.BytesIO(image_bytes)).convert("RGB")
        inputs = self._processor(images=image, return_tensors="pt")
        if self.device and self.device != "cpu":
            inputs = {k: v.to(self.device) for k, v in inputs.items()}

        with torch.no_grad():
            output = self._model.get_image_features(**inputs)

        # transformers 5.x returns BaseModelOutputWithPooling instead of tensor
        if isinstance(output, torch.Tensor):
            features = output
        else:
            features = output.pooler_output if hasattr(output, "pooler_output") else output[0]

        embedding = features.cpu().numpy()[0]
        norm = np.linalg.norm(embedding)
        if norm > 0:
            embedding = embedding / norm
        return embedding.astype(np.float32)
