"""ArcFace identity embeddings via InsightFace."""

import logging

import numpy as np

from contipipe.services.collaborators import FaceEmbeddingModel

logger = logging.getLogger(__name__)


class FaceMatchingService(FaceEmbeddingModel):
    """ArcFace face embedding service with lazy model loading."""

    def __init__(self, model_name: str = "buffalo_l"):
        self.model_name = model_name
        self._app = None

    def _load_model(self):
        """Lazy-load InsightFace model on first use.

        Raises:
            RuntimeError: If model initialization fails
        """
        if self._app is not None:
            return

        try:
            from insightface.app import FaceAnalysis

            logger.info(f"Loading InsightFace {self.model_name} model...")
            self._app = FaceAnalysis(
                name=self.model_name,
                providers=["CUDAExecutionProvider", "CPUExecutionProvider"],
            )
            self._app.prepare(ctx_id=0, det_size=(640, 640))
            logger.info("InsightFace model loaded successfully")
        except Exception as e:
            logger.error(f"Failed to load InsightFace model: {e}")
            raise RuntimeError(
                f"Failed to load InsightFace model: {e}. If CUDA is unavailable, "
                "install onnxruntime (CPU) as fallback."
            ) from e

    def extract_embedding(self, image_bytes: bytes) -> np.ndarray:
        """Generate a normalized 512-dim ArcFace embedding for the first face.

        Raises:
            ValueError: If no face is detected in the image
        """
        self._load_model()

        import cv2

        img = cv2.imdecode(np.frombuffer(image_bytes, dtype=np.uint8), cv2.IMREAD_COLOR)
        if img is None:
            raise ValueError("Image could not be decoded")
        faces = self._app.get(img)
        if not faces:
            raise ValueError("No face detected in image")

        embedding = faces[0].embedding
        return embedding / np.linalg.norm(embedding)

    def compute_similarity(self, emb1: np.ndarray, emb2: np.ndarray) -> float:
        """Cosine similarity (-1 to 1)."""
        return float(np.dot(emb1, emb2) / (np.linalg.norm(emb1) * np.linalg.norm(emb2)))
