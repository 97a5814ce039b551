"""Exception hierarchy for continuity orchestration.

Every failure the engine raises derives from ContinuityError so callers at
the boundary can map them to a response in one place. A quality-gate miss
on the last permitted attempt is a terminal shot state, not an exception.
"""

from typing import Optional


class ContinuityError(Exception):
    """Base class for all continuity engine errors."""


class ProviderUnsupportedContinuityError(ContinuityError):
    """The selected backend accepts neither a start image nor a style reference."""

    def __init__(self, provider: str, model_id: str):
        self.provider = provider
        self.model_id = model_id
        super().__init__(
            f"Model {model_id} ({provider}) does not support continuity "
            "(no image input or style reference). Switch to an eligible model."
        )


class MissingVisualAnchorError(ContinuityError):
    """No mechanism produced a start image and the strategy is not native."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message
            or "Continuity mode requires a visual anchor (startImage or native style reference)."
        )


class MediaExtractionUnavailableError(ContinuityError):
    """The frame extraction tool (ffmpeg/ffprobe) is not installed."""

    def __init__(self, binary: str = "ffmpeg"):
        self.binary = binary
        super().__init__(
            f"{binary} is not available on PATH; frame extraction is disabled."
        )


class StyleTransferUnavailableError(ContinuityError):
    """Palette or style transfer could not be applied."""


class CharacterConsistencyUnavailableError(ContinuityError):
    """Identity keyframes were requested but no keyframe facility is configured."""

    def __init__(self, message: Optional[str] = None):
        super().__init__(
            message
            or "Character keyframe generation is not available. Configure a "
            "face-consistency model to enable character consistency."
        )


class VersionMismatchError(ContinuityError):
    """An optimistic write lost a race against another writer."""

    def __init__(self, session_id: str, expected_version: int, actual_version: Optional[int]):
        self.session_id = session_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Session {session_id} version mismatch: expected {expected_version}, "
            f"found {actual_version if actual_version is not None else 'missing'}"
        )


class SessionNotFoundError(ContinuityError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class ShotNotFoundError(ContinuityError):
    def __init__(self, shot_id: str):
        self.shot_id = shot_id
        super().__init__(f"Shot not found: {shot_id}")


class InvalidSessionRequestError(ContinuityError):
    """A session-level request is malformed or refers to missing media."""
