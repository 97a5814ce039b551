"""Continuity anchor checks: backend compatibility and scene-proxy eligibility."""

import logging
from typing import Optional

from contipipe.errors import ProviderUnsupportedContinuityError
from contipipe.schemas.continuity import ContinuityMode, Session, Shot
from contipipe.services.provider_capabilities import ProviderCapabilityAdapter

logger = logging.getLogger(__name__)


class AnchorService:
    def __init__(self, capabilities: ProviderCapabilityAdapter):
        self._capabilities = capabilities

    def assert_provider_supports_continuity(self, provider: str, model_id: Optional[str] = None) -> None:
        """Raise if the backend can accept neither a start image nor a style reference.

        Raises:
            ProviderUnsupportedContinuityError: If continuity is impossible.
        """
        if not self._capabilities.supports_continuity(provider, model_id):
            raise ProviderUnsupportedContinuityError(provider, model_id or "unknown")

    def should_use_scene_proxy(self, session: Session, shot: Shot, mode: ContinuityMode) -> bool:
        """Whether the session's scene proxy should anchor this shot.

        Requires a ready proxy, a backend that accepts start images, an
        active continuity mode and an opt-in (the shot's own flag when set,
        otherwise the session setting).
        """
        proxy = session.scene_proxy
        if proxy is None or proxy.status != "ready":
            return False
        if mode == "none":
            return False
        provider = self._capabilities.get_provider_from_model(shot.model_id)
        if not self._capabilities.get_capabilities(provider, shot.model_id).supports_start_image:
            return False
        if shot.use_scene_proxy is not None:
            return shot.use_scene_proxy
        return session.default_settings.use_scene_proxy
