"""Continuity Pipeline - multi-shot video generation with visual continuity.

This module provides startup validation functions to ensure the media tools
used for frame extraction and grading are available before shots are
generated. Call validate_dependencies() during application startup.
"""

import logging
import subprocess

__version__ = "0.1.0"

logger = logging.getLogger(__name__)

REQUIRED_BINARIES = ("ffmpeg", "ffprobe")


def validate_dependencies() -> None:
    """Validate required system dependencies are available.

    Raises:
        RuntimeError: If ffmpeg or ffprobe is not found or not functional.
    """
    for binary in REQUIRED_BINARIES:
        try:
            result = subprocess.run(
                [binary, '-version'],
                capture_output=True,
                check=True,
                text=True
            )
            version_line = result.stdout.split('\n')[0]
            logger.info(f"{binary} validated: {version_line}")
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            raise RuntimeError(
                f"{binary} not found on PATH. Install ffmpeg to extract frames and grade shots.\n"
                "Ubuntu/Debian: sudo apt-get install ffmpeg\n"
                "macOS: brew install ffmpeg\n"
                "Windows: https://ffmpeg.org/download.html"
            ) from e
