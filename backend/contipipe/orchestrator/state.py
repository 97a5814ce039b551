"""Stage constants and retry policy for shot generation.

A generation run walks ``resolve -> generate -> grade -> gate`` once per
attempt, then either accepts the result or adjusts parameters and starts
another attempt. Only quality-gate misses are retried; errors end the run.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict

from contipipe.schemas.continuity import SessionSettings, Shot

GenerationStage = Literal["resolve", "generate", "grade", "gate", "adjust", "persist"]

DEFAULT_FACE_STRENGTH = 0.8

STYLE_STRENGTH_STEP = 0.1
STYLE_STRENGTH_FLOOR = 0.35
STYLE_STRENGTH_CEILING = 0.95
FACE_STRENGTH_STEP = 0.05
FACE_STRENGTH_CEILING = 0.95

IDENTITY_DEGRADED_REASON = "identity-threshold"
STYLE_TRANSFER_UNAVAILABLE_REASON = "style-transfer-unavailable"


def adjust_for_quality_gate(
    shot: Shot,
    style_score: Optional[float],
    identity_score: Optional[float],
    style_threshold: float,
    identity_threshold: float,
    default_face_strength: float = DEFAULT_FACE_STRENGTH,
) -> bool:
    """Tune a shot's strengths after a quality gate miss.

    An identity miss trades style for identity: style strength goes down by
    0.1 (floor 0.35), face strength up by 0.05 (ceiling 0.95) and the shot is
    flagged ``style_degraded``. Otherwise a style miss raises style strength
    by 0.1 (ceiling 0.95).

    Returns:
        True if any parameter changed, False if no adjustment is possible.
    """
    needs_identity = identity_score is not None and identity_score < identity_threshold
    needs_style = style_score is not None and style_score < style_threshold
    adjusted = False

    if needs_identity:
        if shot.style_strength > STYLE_STRENGTH_FLOOR:
            shot.style_strength = round(
                max(STYLE_STRENGTH_FLOOR, shot.style_strength - STYLE_STRENGTH_STEP), 4
            )
            adjusted = True
        current_face = shot.face_strength if shot.face_strength is not None else default_face_strength
        if current_face < FACE_STRENGTH_CEILING:
            shot.face_strength = round(min(FACE_STRENGTH_CEILING, current_face + FACE_STRENGTH_STEP), 4)
            adjusted = True
        shot.style_degraded = True
        shot.style_degraded_reason = IDENTITY_DEGRADED_REASON
    elif needs_style:
        if shot.style_strength < STYLE_STRENGTH_CEILING:
            shot.style_strength = round(
                min(STYLE_STRENGTH_CEILING, shot.style_strength + STYLE_STRENGTH_STEP), 4
            )
            adjusted = True

    return adjusted


class RetryPolicy(BaseModel):
    """Bounded retry policy for quality gate misses."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = 1
    auto_retry_on_failure: bool = True
    style_threshold: float = 0.75
    identity_threshold: float = 0.6
    default_face_strength: float = DEFAULT_FACE_STRENGTH

    @classmethod
    def from_settings(
        cls,
        settings: SessionSettings,
        default_face_strength: float = DEFAULT_FACE_STRENGTH,
    ) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            auto_retry_on_failure=settings.auto_retry_on_failure,
            style_threshold=settings.quality_thresholds.style,
            identity_threshold=settings.quality_thresholds.identity,
            default_face_strength=default_face_strength,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def allows_retry(self, attempt: int) -> bool:
        return self.auto_retry_on_failure and attempt < self.max_attempts

    def adjust(self, shot: Shot, style_score: Optional[float], identity_score: Optional[float]) -> bool:
        return adjust_for_quality_gate(
            shot,
            style_score,
            identity_score,
            self.style_threshold,
            self.identity_threshold,
            self.default_face_strength,
        )
