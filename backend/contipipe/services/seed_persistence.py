"""Deterministic seed threading between consecutive shots.

A seed reported by one shot's generation is reused for the next shot when
both run on the same provider and that provider honors seeds.
"""

import logging
from typing import Any, Optional

from contipipe.schemas.continuity import SeedInfo
from contipipe.services.collaborators import GenerationResult
from contipipe.services.provider_capabilities import ProviderCapabilityAdapter

logger = logging.getLogger(__name__)

# Backends accept seeds in [0, 2**32)
MAX_SEED = 2**32 - 1


def _coerce_seed(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            return None
        value = int(value)
    if isinstance(value, float):
        if not value.is_integer():
            return None
        value = int(value)
    if not isinstance(value, int) or value < 0 or value > MAX_SEED:
        return None
    return value


class SeedPersistenceService:
    """Extract, inherit, and forward generation seeds."""

    def __init__(self, capabilities: ProviderCapabilityAdapter):
        self._capabilities = capabilities

    def supports_seed_persistence(self, provider: str, model_id: Optional[str] = None) -> bool:
        return self._capabilities.get_capabilities(provider, model_id).supports_seed_persistence

    def extract_seed(
        self,
        provider: str,
        model_id: str,
        result: GenerationResult,
    ) -> Optional[SeedInfo]:
        """Find the seed a backend used, if it reported one.

        Checks ``result.seed``, then ``metadata["seed"]``, then
        ``metadata["input"]["seed"]``.
        """
        if not self.supports_seed_persistence(provider, model_id):
            return None

        metadata = result.metadata or {}
        nested_input = metadata.get("input") if isinstance(metadata.get("input"), dict) else {}
        for candidate in (result.seed, metadata.get("seed"), nested_input.get("seed")):
            seed = _coerce_seed(candidate)
            if seed is not None:
                return SeedInfo(seed=seed, provider=provider, model_id=model_id)

        logger.debug(f"No seed reported by {provider} for {model_id}")
        return None

    def get_inherited_seed(self, previous: Optional[SeedInfo], provider: str) -> Optional[int]:
        """Return the previous shot's seed when it came from the same provider."""
        if previous is None or previous.provider != provider:
            return None
        return previous.seed

    def build_seed_param(self, provider: str, seed: Optional[int]) -> dict[str, int]:
        if seed is None:
            return {}
        return {"seed": seed}
