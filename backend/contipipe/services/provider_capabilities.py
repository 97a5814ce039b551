"""Provider capability negotiation for continuity generation.

Maps a video model identifier to the backend that serves it and to the
continuity capabilities that backend exposes, then turns a requested
continuity mode into one the backend can actually honor.

Routing follows model ID prefixes:
    veo-*              -> veo      (Vertex AI)
    wan-2.2-*          -> comfyui  (Wan 2.2 workflows)
    gen4* / runway-*   -> runway
    kling-*            -> kling
    ray-* / luma-*     -> luma
    sora-*             -> openai
    replicate/*        -> replicate
    anything else      -> unknown  (no continuity capabilities)

Usage:
    adapter = ProviderCapabilityAdapter()
    provider = adapter.get_provider_from_model("veo-3.1-generate-001")
    caps = adapter.get_capabilities(provider, "veo-3.1-generate-001")
    mode = resolve_continuity_mode("frame-bridge", caps, has_frame_bridge=False)
"""

import logging
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict

from contipipe.schemas.continuity import ContinuityMode, StyleReference

logger = logging.getLogger(__name__)

StrategyType = Literal["native-style-ref", "frame-bridge", "ip-adapter", "none"]


class ProviderContinuityCapabilities(BaseModel):
    """Continuity features a backend accepts."""

    model_config = ConfigDict(frozen=True)

    supports_native_style_reference: bool = False
    supports_native_character_reference: bool = False
    supports_start_image: bool = False
    supports_seed_persistence: bool = False
    supports_extend_video: bool = False


class ContinuityStrategy(BaseModel):
    """Mechanism class chosen for a (provider, mode) pair."""

    model_config = ConfigDict(frozen=True)

    type: StrategyType
    provider: str
    mode: ContinuityMode


NO_CAPABILITIES = ProviderContinuityCapabilities()

PROVIDER_CAPABILITIES: dict[str, ProviderContinuityCapabilities] = {
    "veo": ProviderContinuityCapabilities(
        supports_native_style_reference=True,
        supports_start_image=True,
        supports_seed_persistence=True,
        supports_extend_video=True,
    ),
    "comfyui": ProviderContinuityCapabilities(
        supports_start_image=True,
        supports_seed_persistence=True,
    ),
    "runway": ProviderContinuityCapabilities(
        supports_native_style_reference=True,
        supports_native_character_reference=True,
        supports_start_image=True,
        supports_seed_persistence=True,
    ),
    "kling": ProviderContinuityCapabilities(
        supports_start_image=True,
        supports_native_character_reference=True,
    ),
    "luma": ProviderContinuityCapabilities(
        supports_start_image=True,
        supports_extend_video=True,
    ),
    "openai": ProviderContinuityCapabilities(
        supports_start_image=True,
    ),
    "replicate": ProviderContinuityCapabilities(
        supports_start_image=True,
        supports_seed_persistence=True,
    ),
    "unknown": NO_CAPABILITIES,
}

# Per-model exceptions to the provider defaults
MODEL_CAPABILITY_OVERRIDES: dict[str, ProviderContinuityCapabilities] = {
    # Reference images arrived with Veo 3.1
    "veo-2.0-generate-001": ProviderContinuityCapabilities(
        supports_start_image=True,
        supports_seed_persistence=True,
    ),
    "veo-3.0-generate-001": ProviderContinuityCapabilities(
        supports_start_image=True,
        supports_seed_persistence=True,
    ),
    "veo-3.0-fast-generate-001": ProviderContinuityCapabilities(
        supports_start_image=True,
        supports_seed_persistence=True,
    ),
    # Text-to-video only
    "wan-2.2-t2v": ProviderContinuityCapabilities(
        supports_seed_persistence=True,
    ),
}

_PREFIX_ROUTES: tuple[tuple[str, str], ...] = (
    ("veo-", "veo"),
    ("wan-2.2-", "comfyui"),
    ("gen4", "runway"),
    ("runway-", "runway"),
    ("kling-", "kling"),
    ("ray-", "luma"),
    ("luma-", "luma"),
    ("sora-", "openai"),
    ("replicate/", "replicate"),
)


def resolve_continuity_mode(
    requested: ContinuityMode,
    capabilities: ProviderContinuityCapabilities,
    has_frame_bridge: bool,
) -> ContinuityMode:
    """Degrade a requested continuity mode to one the backend supports.

    Pure function of its arguments:
    - no start image and no native style reference -> "none"
    - "frame-bridge" without a bridge frame or start-image support
      -> "native" if supported, else "style-match"
    - "native" without native support -> "style-match" if start images
      are accepted, else "none"
    - "style-match" upgrades to "native" when native support exists
    """
    start = capabilities.supports_start_image
    native = capabilities.supports_native_style_reference

    if not start and not native:
        return "none"

    if requested == "frame-bridge":
        if not has_frame_bridge or not start:
            return "native" if native else "style-match"
        return "frame-bridge"
    if requested == "native":
        if not native:
            return "style-match" if start else "none"
        return "native"
    if requested == "style-match":
        if native:
            return "native"
        return "style-match" if start else "none"
    return requested


def _veo_style_options(options: dict, style_ref: StyleReference, strength: float) -> dict:
    return {
        **options,
        "referenceImages": [
            {"imageUri": style_ref.frame_url, "referenceType": "style"},
        ],
        "styleStrength": strength,
    }


def _runway_style_options(options: dict, style_ref: StyleReference, strength: float) -> dict:
    return {
        **options,
        "references": [{"uri": style_ref.frame_url, "tag": "style"}],
        "referenceWeight": strength,
    }


def _generic_style_options(options: dict, style_ref: StyleReference, strength: float) -> dict:
    return {
        **options,
        "styleReference": style_ref.frame_url,
        "styleStrength": strength,
    }


_STYLE_OPTION_BUILDERS = {
    "veo": _veo_style_options,
    "runway": _runway_style_options,
}


class ProviderCapabilityAdapter:
    """Resolve providers, capabilities, and continuity strategies for models."""

    def __init__(
        self,
        provider_capabilities: Optional[dict[str, ProviderContinuityCapabilities]] = None,
        model_overrides: Optional[dict[str, ProviderContinuityCapabilities]] = None,
        model_routes: Optional[dict[str, str]] = None,
    ):
        """Initialize adapter.

        Args:
            provider_capabilities: Capability table keyed by provider name.
                Defaults to PROVIDER_CAPABILITIES.
            model_overrides: Capability table keyed by exact model ID.
            model_routes: Exact model ID -> provider routes checked before the
                prefix table.
        """
        self._provider_capabilities = provider_capabilities or PROVIDER_CAPABILITIES
        self._model_overrides = (
            MODEL_CAPABILITY_OVERRIDES if model_overrides is None else model_overrides
        )
        self._model_routes = model_routes or {}

    def get_provider_from_model(self, model_id: str) -> str:
        if model_id in self._model_routes:
            return self._model_routes[model_id]
        for prefix, provider in _PREFIX_ROUTES:
            if model_id.startswith(prefix):
                return provider
        logger.debug(f"No provider route for model {model_id}")
        return "unknown"

    def get_capabilities(self, provider: str, model_id: Optional[str] = None) -> ProviderContinuityCapabilities:
        if model_id and model_id in self._model_overrides:
            return self._model_overrides[model_id]
        return self._provider_capabilities.get(provider, NO_CAPABILITIES)

    def capabilities_for_model(self, model_id: str) -> tuple[str, ProviderContinuityCapabilities]:
        provider = self.get_provider_from_model(model_id)
        return provider, self.get_capabilities(provider, model_id)

    def supports_continuity(self, provider: str, model_id: Optional[str] = None) -> bool:
        caps = self.get_capabilities(provider, model_id)
        return caps.supports_start_image or caps.supports_native_style_reference

    def get_continuity_strategy(
        self,
        provider: str,
        mode: ContinuityMode,
        model_id: Optional[str] = None,
    ) -> ContinuityStrategy:
        """Pick the mechanism class that realizes ``mode`` on this backend."""
        caps = self.get_capabilities(provider, model_id)
        start = caps.supports_start_image
        native = caps.supports_native_style_reference

        strategy_type: StrategyType
        if mode == "native":
            strategy_type = "native-style-ref" if native else ("ip-adapter" if start else "none")
        elif mode == "frame-bridge":
            strategy_type = "frame-bridge" if start else ("native-style-ref" if native else "none")
        elif mode == "style-match":
            strategy_type = "ip-adapter" if start else ("native-style-ref" if native else "none")
        else:
            strategy_type = "none"

        return ContinuityStrategy(type=strategy_type, provider=provider, mode=mode)

    def build_generation_options(
        self,
        provider: str,
        options: dict[str, Any],
        style_ref: StyleReference,
        style_strength: float,
    ) -> dict[str, Any]:
        """Attach a native style reference to generation options."""
        builder = _STYLE_OPTION_BUILDERS.get(provider, _generic_style_options)
        return builder(options, style_ref, style_strength)
