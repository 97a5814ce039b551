"""Pydantic schemas for continuity sessions and their shots.

These models are the persisted document format. Unknown fields are
rejected; documents written by older releases are upgraded by
migrate_document() before validation.
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field, model_validator

GenerationMode = Literal["continuity", "standard"]
ContinuityMode = Literal["frame-bridge", "style-match", "native", "none"]
ContinuityMechanism = Literal[
    "native-style-ref",
    "frame-bridge",
    "pulid-keyframe",
    "ip-adapter",
    "scene-proxy",
    "seed-only",
    "none",
]
ShotStatus = Literal["draft", "generating-keyframe", "generating-video", "completed", "failed"]
SessionStatus = Literal["active", "completed", "archived"]
FramePosition = Literal["first", "last"]
SceneProxyStatus = Literal["ready", "building", "failed"]

CONTINUITY_MODES: tuple[str, ...] = get_args(ContinuityMode)

SCHEMA_VERSION = 2

# Ordering used to keep shot status transitions monotonic within a run
SHOT_STATUS_RANK = {
    "draft": 0,
    "generating-keyframe": 1,
    "generating-video": 2,
    "completed": 3,
    "failed": 3,
}
TERMINAL_SHOT_STATUSES = frozenset({"completed", "failed"})

STYLE_STRENGTH_PRESETS = {
    "subtle": 0.4,
    "balanced": 0.6,
    "strong": 0.8,
    "exact": 0.95,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Return a prefixed random identifier (e.g. ``shot_3f2a...``)."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class _Document(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Resolution(_Document):
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class StyleReference(_Document):
    """Image used to condition generation toward a target style. Immutable."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    source_video_id: Optional[str] = None
    frame_url: str
    frame_timestamp: float = 0.0
    resolution: Resolution
    aspect_ratio: str
    analysis_metadata: Optional[dict[str, Any]] = None
    extracted_at: datetime = Field(default_factory=utcnow)


class FrameBridge(_Document):
    """Frame taken from the end of one shot, used to anchor the next."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    source_video_id: str
    source_shot_id: str
    frame_url: str
    frame_position: FramePosition = "last"
    frame_timestamp: float
    resolution: Resolution
    aspect_ratio: str
    extracted_at: datetime = Field(default_factory=utcnow)


class SeedInfo(_Document):
    seed: int
    provider: str
    model_id: str
    extracted_at: datetime = Field(default_factory=utcnow)


class CameraPose(_Document):
    """Virtual camera offset relative to the scene proxy's reference frame."""

    yaw: float = 0.0
    pitch: float = 0.0
    roll: Optional[float] = None
    dolly: Optional[float] = None


class SceneProxy(_Document):
    """Depth-augmented single-frame approximation of a location."""

    id: str
    source_video_id: str
    proxy_type: Literal["depth-parallax"] = "depth-parallax"
    reference_frame_url: str = ""
    depth_map_url: Optional[str] = None
    status: SceneProxyStatus = "building"
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class SceneProxyRender(_Document):
    id: str
    proxy_id: str
    shot_id: str
    render_url: str
    camera_pose: Optional[CameraPose] = None
    created_at: datetime = Field(default_factory=utcnow)


class QualityThresholds(_Document):
    style: float = Field(default=0.75, ge=0.0, le=1.0)
    identity: float = Field(default=0.6, ge=0.0, le=1.0)


class SessionSettings(_Document):
    """Per-session defaults and behaviour switches."""

    generation_mode: GenerationMode = "continuity"
    default_continuity_mode: ContinuityMode = "frame-bridge"
    default_style_strength: float = Field(default=STYLE_STRENGTH_PRESETS["balanced"], ge=0.0, le=1.0)
    default_model: str = "veo-3.1-generate-001"
    auto_extract_frame_bridge: bool = True
    use_character_consistency: bool = False
    use_scene_proxy: bool = False
    auto_retry_on_failure: bool = True
    max_retries: int = Field(default=1, ge=0)
    quality_thresholds: QualityThresholds = Field(default_factory=QualityThresholds)


SETTINGS_KEYS = tuple(SessionSettings.model_fields)


class Shot(_Document):
    """A single generated clip within a session."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str
    session_id: str
    sequence_index: int = Field(ge=0)
    user_prompt: str
    generation_mode: GenerationMode = "continuity"
    continuity_mode: ContinuityMode = "frame-bridge"
    style_strength: float = Field(default=0.6, ge=0.0, le=1.0)
    # None means "use the session's primary style reference"
    style_reference_id: Optional[str] = None
    style_reference: Optional[StyleReference] = None
    frame_bridge: Optional[FrameBridge] = None
    character_asset_id: Optional[str] = None
    face_strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    camera: Optional[CameraPose] = None
    use_scene_proxy: Optional[bool] = None
    model_id: str
    seed_info: Optional[SeedInfo] = None
    inherited_seed: Optional[int] = None
    video_asset_id: Optional[str] = None
    generated_keyframe_url: Optional[str] = None
    scene_proxy_render_url: Optional[str] = None
    continuity_mechanism_used: ContinuityMechanism = "none"
    style_score: Optional[float] = None
    identity_score: Optional[float] = None
    quality_score: Optional[float] = None
    style_degraded: bool = False
    style_degraded_reason: Optional[str] = None
    style_transfer_applied: bool = False
    retry_count: int = 0
    status: ShotStatus = "draft"
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    generated_at: Optional[datetime] = None

    def transition_to(self, status: ShotStatus) -> bool:
        """Move the shot forward along its status lifecycle.

        A terminal shot may start a new generation run. Within a run the
        status only moves forward; a backward request is ignored. Returns
        True when the status changed.

        Raises:
            ValueError: If a non-draft shot is asked to return to draft.
        """
        current = self.status
        if status == current:
            return False
        if status == "draft":
            raise ValueError(f"Shot {self.id} cannot return to draft from {current}")
        if current in TERMINAL_SHOT_STATUSES or SHOT_STATUS_RANK[status] > SHOT_STATUS_RANK[current]:
            self.status = status
            return True
        return False

    def reset_attempt_flags(self) -> None:
        """Clear per-attempt flags so they never leak across retries."""
        self.style_degraded = False
        self.style_degraded_reason = None
        self.style_transfer_applied = False


class Session(_Document):
    """A continuity session: a primary style reference plus ordered shots."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    primary_style_reference: StyleReference
    scene_proxy: Optional[SceneProxy] = None
    shots: list[Shot] = Field(default_factory=list)
    default_settings: SessionSettings = Field(default_factory=SessionSettings)
    status: SessionStatus = "active"
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_shot_order(self):
        indices = [shot.sequence_index for shot in self.shots]
        if len(set(indices)) != len(indices):
            raise ValueError("Shot sequence indices must be unique")
        if indices != sorted(indices):
            # Stored order is canonicalised rather than rejected
            object.__setattr__(self, "shots", sorted(self.shots, key=lambda s: s.sequence_index))
        return self

    def find_shot(self, shot_id: str) -> Optional[Shot]:
        return next((s for s in self.shots if s.id == shot_id), None)

    def previous_shot(self, shot: Shot) -> Optional[Shot]:
        """Return the nearest earlier shot in sequence order."""
        earlier = [s for s in self.shots if s.sequence_index < shot.sequence_index]
        return earlier[-1] if earlier else None

    def next_sequence_index(self) -> int:
        return self.shots[-1].sequence_index + 1 if self.shots else 0

    def merge_shot(self, shot: Shot) -> None:
        """Replace the shot with the same id, or append it in sequence order."""
        for index, existing in enumerate(self.shots):
            if existing.id == shot.id:
                self.shots[index] = shot
                return
        self.shots = sorted([*self.shots, shot], key=lambda s: s.sequence_index)


# ---------------------------------------------------------------------------
# Document migrations
# ---------------------------------------------------------------------------

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {_CAMEL_RE.sub("_", k).lower(): _snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_snake_keys(v) for v in value]
    return value


def _migrate_v1(doc: dict) -> dict:
    """v1 documents used camelCase keys and carried no version counter."""
    doc = _snake_keys(doc)
    doc.setdefault("version", 0)
    doc.setdefault("scene_proxy", None)
    return doc


_MIGRATIONS = {
    1: _migrate_v1,
}


def migrate_document(doc: dict, schema_version: int) -> dict:
    """Upgrade a stored session document to SCHEMA_VERSION.

    Raises:
        ValueError: If the document claims a schema version newer than this
            release understands.
    """
    if schema_version > SCHEMA_VERSION:
        raise ValueError(
            f"Session document schema v{schema_version} is newer than supported v{SCHEMA_VERSION}"
        )
    for version in range(schema_version, SCHEMA_VERSION):
        doc = _MIGRATIONS[version](doc)
    return doc


def session_from_document(doc: dict, schema_version: int = SCHEMA_VERSION) -> Session:
    return Session.model_validate(migrate_document(dict(doc), schema_version))


def session_to_document(session: Session) -> dict:
    return session.model_dump(mode="json")
