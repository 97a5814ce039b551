"""Session and shot lifecycle operations.

Entry points consumed by the boundary layer (CLI, HTTP handlers). Every
mutation follows the same discipline: do the slow work (frame extraction,
style analysis, proxy building) first, then apply the change to a freshly
read session and commit it with a versioned write, retrying on conflict.
"""

import logging
from typing import Any, Optional, Union

from pydantic import ValidationError

from contipipe.errors import (
    InvalidSessionRequestError,
    ProviderUnsupportedContinuityError,
    SessionNotFoundError,
    ShotNotFoundError,
)
from contipipe.orchestrator.shot_generator import ShotGenerationObserver, ShotGenerator
from contipipe.schemas.continuity import (
    SETTINGS_KEYS,
    CameraPose,
    FrameBridge,
    Session,
    SessionSettings,
    Shot,
    StyleReference,
    new_id,
    utcnow,
)
from contipipe.schemas.requests import CreateSessionRequest, CreateShotRequest, ShotUpdate
from contipipe.services.media import ContinuityMediaService
from contipipe.services.provider_capabilities import ProviderCapabilityAdapter
from contipipe.services.scene_proxy import SceneProxyService
from contipipe.services.session_store import VersionedSessionStore
from contipipe.services.style_reference import StyleReferenceService

logger = logging.getLogger(__name__)


def _find_shot(session: Session, shot_id: str) -> Shot:
    shot = session.find_shot(shot_id)
    if shot is None:
        raise ShotNotFoundError(shot_id)
    return shot


def _check_style_reference(session: Session, style_reference_id: Optional[str], sequence_index: int) -> None:
    if style_reference_id is None:
        return
    ref_shot = session.find_shot(style_reference_id)
    if ref_shot is None or ref_shot.sequence_index >= sequence_index:
        raise InvalidSessionRequestError(
            f"Style reference {style_reference_id} must be an earlier shot in the session"
        )


class SessionService:
    """Create, edit and generate continuity sessions."""

    def __init__(
        self,
        store: VersionedSessionStore,
        capabilities: ProviderCapabilityAdapter,
        media: ContinuityMediaService,
        style_references: StyleReferenceService,
        scene_proxies: SceneProxyService,
        shot_generator: ShotGenerator,
        default_settings: Optional[SessionSettings] = None,
    ):
        self._store = store
        self._capabilities = capabilities
        self._media = media
        self._style_references = style_references
        self._scene_proxies = scene_proxies
        self._shot_generator = shot_generator
        self._default_settings = default_settings or SessionSettings()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(self, user_id: str, request: CreateSessionRequest) -> Session:
        """Create a session anchored on a source video or image.

        Raises:
            InvalidSessionRequestError: If neither source is given, the source
                video cannot be found, or the settings are invalid.
        """
        logger.info(f"Creating continuity session '{request.name}' for user {user_id}")

        if request.session_id:
            existing = await self._store.get(request.session_id)
            if existing is not None:
                return existing

        settings = self._merge_settings(self._default_settings, request.settings or {})
        primary = await self._build_style_reference(
            user_id, request.source_video_id, request.source_image_url, "initial"
        )

        session = Session(
            id=request.session_id or new_id("session"),
            user_id=user_id,
            name=request.name,
            description=request.description,
            primary_style_reference=primary,
            default_settings=settings,
        )
        await self._store.save(session)

        if request.initial_prompt:
            shot = await self.add_shot(CreateShotRequest(session_id=session.id, prompt=request.initial_prompt))
            await self.generate_shot(session.id, shot.id)
            refreshed = await self._store.get(session.id)
            if refreshed is not None:
                return refreshed

        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return await self._store.get(session_id)

    async def get_user_sessions(self, user_id: str) -> list[Session]:
        return await self._store.find_by_user(user_id)

    async def delete_session(self, session_id: str) -> bool:
        deleted = await self._store.delete(session_id)
        if deleted:
            logger.info(f"Deleted session {session_id}")
        return deleted

    async def update_primary_style_reference(
        self,
        session_id: str,
        source_video_id: Optional[str] = None,
        source_image_url: Optional[str] = None,
    ) -> Session:
        """Replace the primary style reference with a new, analyzed record.

        Without a new source the current reference is re-analyzed.
        """
        session = await self._require_session(session_id)
        if source_video_id or source_image_url:
            reference = await self._build_style_reference(
                session.user_id, source_video_id, source_image_url, "updated"
            )
        else:
            reference = await self._style_references.analyze_style_reference(
                session.primary_style_reference
            )

        def apply(fresh: Session) -> None:
            fresh.primary_style_reference = reference

        updated, _ = await self._store.update(session_id, apply)
        return updated

    async def update_session_settings(self, session_id: str, settings: dict[str, Any]) -> Session:
        """Apply recognized setting keys; anything else is ignored."""
        recognized = {key: value for key, value in settings.items() if key in SETTINGS_KEYS and value is not None}
        ignored = sorted(set(settings) - set(SETTINGS_KEYS))
        if ignored:
            logger.warning(f"Ignoring unrecognized session settings: {', '.join(ignored)}")

        def apply(fresh: Session) -> None:
            fresh.default_settings = self._merge_settings(fresh.default_settings, recognized)

        updated, _ = await self._store.update(session_id, apply)
        return updated

    async def create_scene_proxy(
        self,
        session_id: str,
        source_shot_id: Optional[str] = None,
        source_video_id: Optional[str] = None,
    ) -> Session:
        """Build a scene proxy from a shot's clip or a source video.

        A ready proxy switches the session's ``use_scene_proxy`` on.

        Raises:
            InvalidSessionRequestError: If no usable source video is found.
        """
        session = await self._require_session(session_id)

        video_id: Optional[str] = None
        if source_shot_id:
            shot = _find_shot(session, source_shot_id)
            if not shot.video_asset_id:
                raise InvalidSessionRequestError(f"Shot {source_shot_id} has no video asset")
            video_id = shot.video_asset_id
        elif source_video_id:
            video_id = source_video_id

        video_url = await self._media.get_video_url(video_id) if video_id else None
        if not video_id or not video_url:
            raise InvalidSessionRequestError("Source video not found for proxy")

        proxy = await self._scene_proxies.create_proxy_from_video(session.user_id, video_id, video_url)

        def apply(fresh: Session) -> None:
            fresh.scene_proxy = proxy
            if proxy.status == "ready":
                fresh.default_settings = fresh.default_settings.model_copy(update={"use_scene_proxy": True})

        updated, _ = await self._store.update(session_id, apply)
        logger.info(f"Scene proxy {proxy.id} for session {session_id}: {proxy.status}")
        return updated

    # ------------------------------------------------------------------
    # Shots
    # ------------------------------------------------------------------

    async def add_shot(self, request: CreateShotRequest) -> Shot:
        """Append a draft shot (or a completed one for an imported clip).

        Raises:
            SessionNotFoundError: If the session does not exist.
            ProviderUnsupportedContinuityError: If continuity generation is
                requested on a model that cannot carry an anchor.
        """
        session = await self._require_session(request.session_id)
        settings = session.default_settings

        continuity_mode = request.continuity_mode or settings.default_continuity_mode
        generation_mode = request.generation_mode or settings.generation_mode
        model_id = request.model_id or settings.default_model

        if generation_mode == "continuity":
            provider = self._capabilities.get_provider_from_model(model_id)
            if not self._capabilities.supports_continuity(provider, model_id):
                raise ProviderUnsupportedContinuityError(provider, model_id)

        previous = session.shots[-1] if session.shots else None
        extracted_bridge: Optional[FrameBridge] = None
        if (
            previous is not None
            and previous.frame_bridge is None
            and continuity_mode == "frame-bridge"
            and previous.video_asset_id
        ):
            extracted_bridge = await self._extract_bridge(session.user_id, previous)

        explicit_style_ref = "style_reference_id" in request.model_fields_set
        has_source_video = bool(request.source_video_id)

        def apply(fresh: Session) -> Shot:
            last = fresh.shots[-1] if fresh.shots else None
            bridge = last.frame_bridge if last else None
            if bridge is None and extracted_bridge is not None and last and extracted_bridge.source_shot_id == last.id:
                bridge = extracted_bridge
            sequence_index = fresh.next_sequence_index()
            if explicit_style_ref:
                _check_style_reference(fresh, request.style_reference_id, sequence_index)
            now = utcnow()

            shot = Shot(
                id=new_id("shot"),
                session_id=fresh.id,
                sequence_index=sequence_index,
                user_prompt=request.prompt,
                generation_mode=generation_mode,
                continuity_mode=continuity_mode,
                style_strength=(
                    request.style_strength
                    if request.style_strength is not None
                    else fresh.default_settings.default_style_strength
                ),
                style_reference_id=request.style_reference_id if explicit_style_ref else (last.id if last else None),
                frame_bridge=bridge,
                character_asset_id=request.character_asset_id,
                face_strength=request.face_strength,
                camera=request.camera,
                use_scene_proxy=request.use_scene_proxy,
                model_id=model_id,
                video_asset_id=request.source_video_id,
                status="completed" if has_source_video else "draft",
                created_at=now,
                generated_at=now if has_source_video else None,
            )
            fresh.merge_shot(shot)
            return shot

        _, shot = await self._store.update(request.session_id, apply)
        logger.info(f"Added shot {shot.id} (#{shot.sequence_index}) to session {request.session_id}")
        return shot

    async def generate_shot(
        self,
        session_id: str,
        shot_id: str,
        observer: Optional[ShotGenerationObserver] = None,
    ) -> Shot:
        return await self._shot_generator.generate_shot(session_id, shot_id, observer)

    async def update_shot(
        self,
        session_id: str,
        shot_id: str,
        updates: Union[ShotUpdate, dict[str, Any]],
    ) -> Shot:
        """Edit a shot's generation parameters.

        ``character_asset_id=None`` (or ``style_reference_id=None``) clears
        the field; camera updates are merged into the current pose.

        Raises:
            InvalidSessionRequestError: If the update touches ``status``,
                carries invalid values or points the style reference at a
                shot that is not earlier in the sequence.
        """
        if isinstance(updates, dict):
            if "status" in updates:
                raise InvalidSessionRequestError("Shot status is not editable")
            try:
                updates = ShotUpdate.model_validate(updates)
            except ValidationError as e:
                raise InvalidSessionRequestError(f"Invalid shot update: {e}") from e

        provided = updates.model_fields_set

        def apply(fresh: Session) -> Shot:
            shot = _find_shot(fresh, shot_id)
            if updates.prompt is not None:
                shot.user_prompt = updates.prompt
            if updates.continuity_mode:
                shot.continuity_mode = updates.continuity_mode
            if updates.generation_mode:
                shot.generation_mode = updates.generation_mode
            if "style_reference_id" in provided:
                _check_style_reference(fresh, updates.style_reference_id, shot.sequence_index)
                shot.style_reference_id = updates.style_reference_id
            if updates.style_strength is not None:
                shot.style_strength = updates.style_strength
            if updates.model_id:
                shot.model_id = updates.model_id
            if "character_asset_id" in provided:
                shot.character_asset_id = updates.character_asset_id or None
            if "face_strength" in provided:
                shot.face_strength = updates.face_strength
            if updates.camera is not None:
                base = (shot.camera or CameraPose()).model_dump()
                base.update(updates.camera.model_dump(exclude_none=True))
                shot.camera = CameraPose(**base)
            if "use_scene_proxy" in provided:
                shot.use_scene_proxy = updates.use_scene_proxy
            return shot

        _, shot = await self._store.update(session_id, apply)
        return shot

    async def update_shot_style_reference(
        self,
        session_id: str,
        shot_id: str,
        style_reference_id: Optional[str],
    ) -> Shot:
        def apply(fresh: Session) -> Shot:
            shot = _find_shot(fresh, shot_id)
            _check_style_reference(fresh, style_reference_id, shot.sequence_index)
            shot.style_reference_id = style_reference_id
            return shot

        _, shot = await self._store.update(session_id, apply)
        return shot

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require_session(self, session_id: str) -> Session:
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def _build_style_reference(
        self,
        user_id: str,
        source_video_id: Optional[str],
        source_image_url: Optional[str],
        purpose: str,
    ) -> StyleReference:
        if source_video_id:
            video_url = await self._media.get_video_url(source_video_id)
            if not video_url:
                raise InvalidSessionRequestError(f"Source video not found: {source_video_id}")
            frame = await self._media.extract_representative_frame(
                user_id, source_video_id, video_url, purpose
            )
            return await self._media.create_style_reference_from_video(source_video_id, frame)
        if source_image_url:
            reference = await self._style_references.create_from_image(source_image_url)
            return await self._style_references.analyze_style_reference(reference)
        raise InvalidSessionRequestError("Must provide source_video_id or source_image_url")

    async def _extract_bridge(self, user_id: str, previous: Shot) -> Optional[FrameBridge]:
        video_url = await self._media.get_video_url(previous.video_asset_id)
        if not video_url:
            return None
        try:
            return await self._media.extract_bridge_frame(
                user_id, previous.video_asset_id, video_url, previous.id, "last"
            )
        except Exception as e:
            logger.warning(
                f"Frame bridge extraction failed during shot creation for {previous.id}; "
                f"continuing without frame bridge: {e}"
            )
            return None

    @staticmethod
    def _merge_settings(current: SessionSettings, overrides: dict[str, Any]) -> SessionSettings:
        merged = current.model_dump()
        for key, value in overrides.items():
            if key == "quality_thresholds" and isinstance(value, dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        try:
            return SessionSettings.model_validate(merged)
        except ValidationError as e:
            raise InvalidSessionRequestError(f"Invalid session settings: {e}") from e
