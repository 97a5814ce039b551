"""Request models for session and shot operations.

Optional fields distinguish "not provided" from an explicit ``None`` through
``model_fields_set``: an explicit ``None`` clears a nullable field.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from contipipe.schemas.continuity import CameraPose, ContinuityMode, GenerationMode


class _Request(BaseModel):
    model_config = ConfigDict(extra="forbid")


class CreateSessionRequest(_Request):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    source_video_id: Optional[str] = None
    source_image_url: Optional[str] = None
    initial_prompt: Optional[str] = None
    settings: Optional[dict[str, Any]] = None
    # Client-chosen id makes creation idempotent
    session_id: Optional[str] = None


class CreateShotRequest(_Request):
    session_id: str
    prompt: str
    continuity_mode: Optional[ContinuityMode] = None
    generation_mode: Optional[GenerationMode] = None
    style_reference_id: Optional[str] = None
    style_strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    model_id: Optional[str] = None
    character_asset_id: Optional[str] = None
    face_strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    camera: Optional[CameraPose] = None
    use_scene_proxy: Optional[bool] = None
    # An existing clip imported as an already completed shot
    source_video_id: Optional[str] = None


class CameraUpdate(_Request):
    yaw: Optional[float] = None
    pitch: Optional[float] = None
    roll: Optional[float] = None
    dolly: Optional[float] = None


class ShotUpdate(_Request):
    """Editable shot fields. Status is not editable."""

    prompt: Optional[str] = None
    continuity_mode: Optional[ContinuityMode] = None
    generation_mode: Optional[GenerationMode] = None
    style_reference_id: Optional[str] = None
    style_strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    model_id: Optional[str] = None
    character_asset_id: Optional[str] = None
    face_strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    camera: Optional[CameraUpdate] = None
    use_scene_proxy: Optional[bool] = None
