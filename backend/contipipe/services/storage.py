"""
Local object storage for contipipe.

Stores generated artifacts (bridge frames, depth maps, proxy renders, graded
clips) under a per-user directory tree with path traversal protection, and
hands back file:// view URLs (or URLs under a configured public prefix).
"""
import asyncio
import json
import logging
import mimetypes
import uuid
from pathlib import Path
from typing import Any, Optional

from contipipe.services.collaborators import ObjectStorage, StoredObject

logger = logging.getLogger(__name__)

# Storage types used by the continuity engine
STORAGE_TYPES = {
    "FRAME": "frames",
    "PREVIEW_IMAGE": "previews",
    "KEYFRAME": "keyframes",
    "VIDEO": "videos",
}


class LocalObjectStorage(ObjectStorage):
    """
    Filesystem-backed object storage.

    Creates structured directories:
    - {base_dir}/{user_id}/frames/ - Bridge and representative frames
    - {base_dir}/{user_id}/previews/ - Depth maps and scene proxy renders
    - {base_dir}/{user_id}/keyframes/ - Style-matched keyframes
    - {base_dir}/{user_id}/videos/ - Graded clips

    Each object gets a JSON sidecar with its metadata.
    """

    def __init__(self, base_dir: str | Path, public_base_url: Optional[str] = None):
        """
        Initialize storage with base directory.

        Args:
            base_dir: Root directory for all stored objects.
            public_base_url: Optional URL prefix replacing file:// view URLs.
        """
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._index: dict[str, Path] = {}

    def get_user_dir(self, user_id: str, storage_type: str) -> Path:
        """
        Get or create the directory for a user's objects of one type.

        Raises:
            ValueError: If user_id creates path outside base_dir (traversal attack)
        """
        subdir = STORAGE_TYPES.get(storage_type, "misc")
        user_dir = (self.base_dir / user_id / subdir).resolve()

        if not user_dir.is_relative_to(self.base_dir):
            raise ValueError("Invalid storage path")

        user_dir.mkdir(parents=True, exist_ok=True)
        return user_dir

    def _view_url(self, path: Path) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{path.relative_to(self.base_dir).as_posix()}"
        return path.as_uri()

    def _write(self, path: Path, buffer: bytes, metadata: dict) -> None:
        path.write_bytes(buffer)
        path.with_suffix(path.suffix + ".json").write_text(json.dumps(metadata, default=str))

    async def save_from_buffer(
        self,
        user_id: str,
        buffer: bytes,
        storage_type: str,
        mime_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StoredObject:
        object_id = uuid.uuid4().hex
        extension = mimetypes.guess_extension(mime_type) or ".bin"
        path = self.get_user_dir(user_id, storage_type) / f"{object_id}{extension}"

        sidecar = {"mime_type": mime_type, "user_id": user_id, **(metadata or {})}
        await asyncio.to_thread(self._write, path, buffer, sidecar)
        self._index[object_id] = path

        logger.debug(f"Stored {len(buffer)} bytes as {path}")
        return StoredObject(
            id=object_id,
            view_url=self._view_url(path),
            mime_type=mime_type,
            size_bytes=len(buffer),
        )

    async def get_view_url(self, object_id: str) -> Optional[str]:
        path = self._index.get(object_id)
        if path is None:
            # Objects written by another process are found by name
            matches = [
                p for p in self.base_dir.glob(f"*/*/{object_id}.*")
                if not p.name.endswith(".json")
            ]
            if not matches:
                return None
            path = matches[0]
            self._index[object_id] = path
        return self._view_url(path)
