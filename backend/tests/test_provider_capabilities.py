"""Tests for capability lookup, continuity mode degradation and seed threading."""

import pytest

from contipipe.schemas.continuity import SeedInfo
from contipipe.services.collaborators import GenerationResult
from contipipe.services.provider_capabilities import (
    ProviderCapabilityAdapter,
    ProviderContinuityCapabilities,
    resolve_continuity_mode,
)
from contipipe.services.seed_persistence import SeedPersistenceService

FULL = ProviderContinuityCapabilities(supports_start_image=True, supports_native_style_reference=True)
START_ONLY = ProviderContinuityCapabilities(supports_start_image=True)
NATIVE_ONLY = ProviderContinuityCapabilities(supports_native_style_reference=True)
NOTHING = ProviderContinuityCapabilities(supports_seed_persistence=True)


@pytest.mark.parametrize(
    "requested, caps, has_bridge, expected",
    [
        ("frame-bridge", FULL, True, "frame-bridge"),
        ("frame-bridge", FULL, False, "native"),
        ("frame-bridge", START_ONLY, False, "style-match"),
        ("frame-bridge", NATIVE_ONLY, True, "native"),
        ("native", FULL, False, "native"),
        ("native", START_ONLY, False, "style-match"),
        ("style-match", FULL, False, "native"),
        ("style-match", START_ONLY, True, "style-match"),
        ("none", FULL, True, "none"),
        ("frame-bridge", NOTHING, True, "none"),
        ("native", NOTHING, False, "none"),
    ],
)
def test_resolve_continuity_mode(requested, caps, has_bridge, expected):
    assert resolve_continuity_mode(requested, caps, has_bridge) == expected


def test_model_routing_and_overrides():
    adapter = ProviderCapabilityAdapter()

    assert adapter.get_provider_from_model("veo-3.1-generate-001") == "veo"
    assert adapter.get_provider_from_model("wan-2.2-t2v") == "comfyui"
    assert adapter.get_provider_from_model("mystery-model") == "unknown"

    assert adapter.supports_continuity("veo", "veo-3.1-generate-001")
    assert not adapter.get_capabilities("veo", "veo-2.0-generate-001").supports_native_style_reference
    assert not adapter.supports_continuity("comfyui", "wan-2.2-t2v")
    assert not adapter.supports_continuity("unknown", "mystery-model")


def test_custom_routes_take_precedence():
    adapter = ProviderCapabilityAdapter(model_routes={"house-model": "runway"})
    provider, caps = adapter.capabilities_for_model("house-model")
    assert provider == "runway"
    assert caps.supports_native_style_reference


@pytest.mark.parametrize(
    "mode, expected",
    [
        ("native", "native-style-ref"),
        ("frame-bridge", "frame-bridge"),
        ("style-match", "ip-adapter"),
        ("none", "none"),
    ],
)
def test_strategy_for_full_provider(mode, expected):
    adapter = ProviderCapabilityAdapter()
    assert adapter.get_continuity_strategy("veo", mode, "veo-3.1-generate-001").type == expected


def test_native_style_options_per_provider():
    from conftest import make_style_reference

    adapter = ProviderCapabilityAdapter()
    ref = make_style_reference()

    veo = adapter.build_generation_options("veo", {"model": "veo-3.1-generate-001"}, ref, 0.7)
    assert veo["referenceImages"] == [{"imageUri": ref.frame_url, "referenceType": "style"}]
    assert veo["styleStrength"] == 0.7
    assert veo["model"] == "veo-3.1-generate-001"

    runway = adapter.build_generation_options("runway", {}, ref, 0.5)
    assert runway["referenceWeight"] == 0.5


class TestSeedPersistence:
    def setup_method(self):
        self.seeds = SeedPersistenceService(ProviderCapabilityAdapter())

    @pytest.mark.parametrize(
        "result",
        [
            GenerationResult(asset_id="a", video_url="u", seed=42),
            GenerationResult(asset_id="a", video_url="u", metadata={"seed": "42"}),
            GenerationResult(asset_id="a", video_url="u", metadata={"input": {"seed": 42.0}}),
        ],
    )
    def test_extract_seed_sources(self, result):
        info = self.seeds.extract_seed("veo", "veo-3.1-generate-001", result)
        assert info.seed == 42
        assert info.provider == "veo"

    def test_invalid_or_unsupported_seed_is_ignored(self):
        bad = GenerationResult(asset_id="a", video_url="u", metadata={"seed": -3})
        assert self.seeds.extract_seed("veo", "veo-3.1-generate-001", bad) is None

        good = GenerationResult(asset_id="a", video_url="u", seed=7)
        assert self.seeds.extract_seed("openai", "sora-2", good) is None

    def test_seed_inherited_only_from_same_provider(self):
        previous = SeedInfo(seed=99, provider="veo", model_id="veo-3.1-generate-001")
        assert self.seeds.get_inherited_seed(previous, "veo") == 99
        assert self.seeds.get_inherited_seed(previous, "runway") is None
        assert self.seeds.get_inherited_seed(None, "veo") is None

    def test_build_seed_param(self):
        assert self.seeds.build_seed_param("veo", 5) == {"seed": 5}
        assert self.seeds.build_seed_param("veo", None) == {}
