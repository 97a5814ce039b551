"""Shot generation orchestrator.

Drives one shot through the continuity pipeline:

- Resolves the backend and its capabilities, degrading the requested
  continuity mode to one the backend can honor
- Picks the anchor mechanism through an ordered handler chain (scene proxy,
  native style reference, frame bridge, style-transfer keyframe)
- Generates, grades and quality-gates the clip, adjusting style/face
  strength and retrying on gate misses within the session's retry budget
- Persists shot state with optimistic compare-and-swap writes so concurrent
  shot generations in the same session never overwrite each other

Errors are not retried: any exception during an attempt marks the shot
failed and ends the run. Progress is reported to an optional
ShotGenerationObserver.
"""

import logging
from typing import Any, Awaitable, Callable, Literal, Optional

from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from contipipe.errors import (
    CharacterConsistencyUnavailableError,
    InvalidSessionRequestError,
    MissingVisualAnchorError,
    SessionNotFoundError,
    ShotNotFoundError,
    VersionMismatchError,
)
from contipipe.orchestrator.state import (
    DEFAULT_FACE_STRENGTH,
    STYLE_TRANSFER_UNAVAILABLE_REASON,
    GenerationStage,
    RetryPolicy,
)
from contipipe.schemas.continuity import (
    ContinuityMechanism,
    ContinuityMode,
    Session,
    Shot,
    ShotStatus,
    StyleReference,
    utcnow,
)
from contipipe.services.anchor import AnchorService
from contipipe.services.character_keyframe import CharacterKeyframeService
from contipipe.services.grading import GradingService
from contipipe.services.media import ContinuityMediaService
from contipipe.services.provider_capabilities import (
    ContinuityStrategy,
    ProviderCapabilityAdapter,
    ProviderContinuityCapabilities,
    resolve_continuity_mode,
)
from contipipe.services.quality_gate import QualityGateRequest, QualityGateService
from contipipe.services.scene_proxy import SceneProxyService
from contipipe.services.seed_persistence import SeedPersistenceService
from contipipe.services.session_store import VersionedSessionStore

logger = logging.getLogger(__name__)

AttemptOutcome = Literal["accepted", "retry", "rejected"]


class ShotGenerationObserver:
    """Receives progress callbacks from a generation run.

    Subclass and override what you need; the defaults do nothing. Errors
    raised by an observer are logged and never interrupt generation.
    """

    def on_stage(self, shot_id: str, stage: GenerationStage, attempt: int) -> None:
        pass

    def on_complete(self, shot: Shot) -> None:
        pass


class MechanismContext(BaseModel):
    """Everything a mechanism handler needs to decide and act."""

    session: Session
    shot: Shot
    previous_shot: Optional[Shot] = None
    provider: str
    capabilities: ProviderContinuityCapabilities
    strategy: ContinuityStrategy
    is_continuity: bool
    mode: ContinuityMode
    supports_seed_persistence: bool
    inherited_seed: Optional[int] = None
    requires_character: bool


class MechanismResult(BaseModel):
    start_image_url: Optional[str] = None
    mechanism: ContinuityMechanism


class RunPlan(BaseModel):
    """Per-run decisions made once before the first attempt."""

    provider: str
    capabilities: ProviderContinuityCapabilities
    previous_shot: Optional[Shot] = None
    is_continuity: bool
    mode: ContinuityMode


MechanismHandler = Callable[[MechanismContext], Awaitable[Optional[MechanismResult]]]


def resolve_style_reference(session: Session, shot: Shot) -> StyleReference:
    """The shot's chosen prior-shot reference, else the session primary.

    Only a shot earlier in the sequence can lend its style; anything else
    falls back to the primary reference.
    """
    if shot.style_reference_id is None:
        return session.primary_style_reference
    ref_shot = session.find_shot(shot.style_reference_id)
    if ref_shot is None or ref_shot.sequence_index >= shot.sequence_index or ref_shot.style_reference is None:
        return session.primary_style_reference
    return ref_shot.style_reference


def resolve_character_from_session(session: Session) -> Optional[str]:
    """Most recent character asset used in the session."""
    for shot in reversed(session.shots):
        if shot.character_asset_id:
            return shot.character_asset_id
    return None


class ShotGenerator:
    """Generate a single shot with continuity enforcement."""

    def __init__(
        self,
        store: VersionedSessionStore,
        capabilities: ProviderCapabilityAdapter,
        anchors: AnchorService,
        seeds: SeedPersistenceService,
        media: ContinuityMediaService,
        grading: GradingService,
        quality_gate: QualityGateService,
        scene_proxies: SceneProxyService,
        character_keyframes: Optional[CharacterKeyframeService] = None,
        persist_max_attempts: int = 3,
        default_face_strength: float = DEFAULT_FACE_STRENGTH,
    ):
        self._store = store
        self._capabilities = capabilities
        self._anchors = anchors
        self._seeds = seeds
        self._media = media
        self._grading = grading
        self._quality_gate = quality_gate
        self._scene_proxies = scene_proxies
        self._character_keyframes = character_keyframes
        self._persist_max_attempts = persist_max_attempts
        self._default_face_strength = default_face_strength

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def generate_shot(
        self,
        session_id: str,
        shot_id: str,
        observer: Optional[ShotGenerationObserver] = None,
    ) -> Shot:
        """Run a full generation for one shot and persist the result.

        Returns:
            The shot in its terminal state (completed or failed).

        Raises:
            SessionNotFoundError: If the session does not exist.
            ShotNotFoundError: If the shot is not in the session.
            VersionMismatchError: If the final save keeps losing races.
        """
        session = await self._store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        shot = session.find_shot(shot_id)
        if shot is None:
            raise ShotNotFoundError(shot_id)

        observer = observer or ShotGenerationObserver()
        policy = RetryPolicy.from_settings(session.default_settings, self._default_face_strength)
        shot.error = None

        logger.info(
            f"Generating shot {shot_id} (#{shot.sequence_index}) in session {session_id} "
            f"with {shot.model_id}, mode={shot.generation_mode}/{shot.continuity_mode}"
        )

        outcome: Optional[AttemptOutcome] = None
        try:
            run = await self._prepare_run(session, shot)
            for attempt in range(1, policy.max_attempts + 1):
                shot.retry_count = attempt - 1
                outcome = await self._run_attempt(session, shot, run, policy, attempt, observer)
                if outcome != "retry":
                    break
        except Exception as e:
            self._fail(shot, e)
            outcome = "rejected"

        if outcome is None or outcome == "retry":
            # Attempts ran out without a terminal decision
            if shot.video_asset_id:
                self._set_status(shot, "completed")
            else:
                self._set_status(shot, "failed")
                shot.error = shot.error or "Quality gate not passed after maximum retries"
            shot.generated_at = utcnow()

        self._notify(observer.on_stage, shot_id, "persist", shot.retry_count + 1)
        await self.persist_shot_result(session_id, shot, fallback_session=session)
        self._notify(observer.on_complete, shot)
        return shot

    # ------------------------------------------------------------------
    # Run stages
    # ------------------------------------------------------------------

    async def _prepare_run(self, session: Session, shot: Shot) -> RunPlan:
        """Resolve provider, effective mode and the on-demand bridge frame."""
        provider, caps = self._capabilities.capabilities_for_model(shot.model_id)
        previous = session.previous_shot(shot)
        is_continuity = shot.generation_mode == "continuity"
        if is_continuity:
            effective_mode = shot.continuity_mode
        else:
            effective_mode = "frame-bridge" if shot.continuity_mode == "frame-bridge" else "none"

        if is_continuity:
            self._anchors.assert_provider_supports_continuity(provider, shot.model_id)

        if effective_mode == "frame-bridge" and shot.frame_bridge is None and previous and previous.video_asset_id:
            await self._extract_bridge_on_demand(session, shot, previous)

        resolved_mode = (
            resolve_continuity_mode(effective_mode, caps, shot.frame_bridge is not None)
            if is_continuity
            else effective_mode
        )
        if resolved_mode != effective_mode:
            logger.info(f"Shot {shot.id}: continuity mode {effective_mode} degraded to {resolved_mode}")

        return RunPlan(
            provider=provider,
            capabilities=caps,
            previous_shot=previous,
            is_continuity=is_continuity,
            mode=resolved_mode,
        )

    async def _extract_bridge_on_demand(self, session: Session, shot: Shot, previous: Shot) -> None:
        video_url = await self._media.get_video_url(previous.video_asset_id)
        if not video_url:
            return
        try:
            shot.frame_bridge = await self._media.extract_bridge_frame(
                session.user_id, previous.video_asset_id, video_url, previous.id, "last"
            )
        except Exception as e:
            logger.warning(f"Failed to extract frame bridge on demand for shot {shot.id}: {e}")

    async def _run_attempt(
        self,
        session: Session,
        shot: Shot,
        run: RunPlan,
        policy: RetryPolicy,
        attempt: int,
        observer: ShotGenerationObserver,
    ) -> AttemptOutcome:
        provider, caps = run.provider, run.capabilities
        is_continuity, mode = run.is_continuity, run.mode

        # resolve
        self._notify(observer.on_stage, shot.id, "resolve", attempt)
        if is_continuity and mode == "none":
            raise MissingVisualAnchorError(
                "Continuity mode requires a visual anchor, but the selected provider cannot "
                "accept image inputs or style references. Switch to an eligible provider."
            )
        shot.reset_attempt_flags()

        supports_seed = caps.supports_seed_persistence
        inherited_seed = None
        if supports_seed:
            previous = run.previous_shot
            inherited_seed = self._seeds.get_inherited_seed(
                previous.seed_info if previous else None, provider
            )
            if inherited_seed is not None:
                shot.inherited_seed = inherited_seed

        strategy = self._capabilities.get_continuity_strategy(provider, mode, shot.model_id)
        context = MechanismContext(
            session=session,
            shot=shot,
            previous_shot=run.previous_shot,
            provider=provider,
            capabilities=caps,
            strategy=strategy,
            is_continuity=is_continuity,
            mode=mode,
            supports_seed_persistence=supports_seed,
            inherited_seed=inherited_seed,
            requires_character=bool(
                shot.character_asset_id or session.default_settings.use_character_consistency
            ),
        )
        mechanism = await self.resolve_mechanism(context)

        if is_continuity and not mechanism.start_image_url and strategy.type != "native-style-ref":
            raise MissingVisualAnchorError()

        options = self._build_generation_options(shot, provider, strategy, mechanism, inherited_seed, session)

        # generate
        self._notify(observer.on_stage, shot.id, "generate", attempt)
        self._set_status(shot, "generating-video")
        await self.persist_shot_result(session.id, shot, fallback_session=session)

        result = await self._media.generate_video(shot.user_prompt, options)
        if supports_seed:
            seed_info = self._seeds.extract_seed(provider, shot.model_id, result)
            if seed_info is not None:
                shot.seed_info = seed_info

        if not is_continuity:
            shot.video_asset_id = result.asset_id
            return await self._accept(session, shot, mechanism.mechanism)

        # grade
        self._notify(observer.on_stage, shot.id, "grade", attempt)
        style_ref = resolve_style_reference(session, shot)
        shot.style_reference = style_ref
        graded = await self._grading.match_palette(
            session.user_id, result.asset_id, result.video_url, style_ref.frame_url
        )
        if graded.applied and graded.asset_id:
            shot.video_asset_id = graded.asset_id
            video_url = graded.video_url or result.video_url
        else:
            shot.video_asset_id = result.asset_id
            video_url = result.video_url

        # gate
        self._notify(observer.on_stage, shot.id, "gate", attempt)
        character_reference_url = None
        if shot.character_asset_id:
            character_reference_url = await self._media.get_character_reference_url(
                session.user_id, shot.character_asset_id
            )
        quality = await self._quality_gate.evaluate(
            QualityGateRequest(
                reference_image_url=style_ref.frame_url,
                generated_video_url=video_url,
                character_reference_url=character_reference_url,
                style_threshold=policy.style_threshold,
                identity_threshold=policy.identity_threshold,
            )
        )
        if quality.style_score is not None:
            shot.style_score = quality.style_score
        if quality.identity_score is not None:
            shot.identity_score = quality.identity_score
        shot.quality_score = 1.0 if quality.passed else 0.0

        if quality.passed:
            return await self._accept(session, shot, mechanism.mechanism)

        if policy.allows_retry(attempt):
            self._notify(observer.on_stage, shot.id, "adjust", attempt)
            if policy.adjust(shot, quality.style_score, quality.identity_score):
                logger.warning(
                    f"Quality gate failed for shot {shot.id} on attempt {attempt}, retrying "
                    f"(style={quality.style_score}, identity={quality.identity_score}, "
                    f"next style_strength={shot.style_strength}, face_strength={shot.face_strength})"
                )
                return "retry"
            logger.warning(f"Quality gate failed for shot {shot.id}; no adjustment possible")

        # Gate miss with no retry left is a terminal state, not an exception
        shot.continuity_mechanism_used = mechanism.mechanism
        self._set_status(shot, "failed")
        shot.error = (
            f"Quality gate not passed after {attempt} attempt(s) "
            f"(style={_fmt_score(quality.style_score)} / {policy.style_threshold}, "
            f"identity={_fmt_score(quality.identity_score)} / {policy.identity_threshold})"
        )
        shot.generated_at = utcnow()
        logger.error(f"Shot {shot.id} failed: {shot.error}")
        return "rejected"

    async def _accept(self, session: Session, shot: Shot, mechanism: ContinuityMechanism) -> AttemptOutcome:
        shot.continuity_mechanism_used = mechanism
        self._set_status(shot, "completed")
        shot.generated_at = utcnow()
        logger.info(f"Shot {shot.id} completed via {mechanism} (retries={shot.retry_count})")

        if session.default_settings.auto_extract_frame_bridge and shot.video_asset_id:
            await self._extract_post_generation_frames(session, shot)
        return "accepted"

    async def _extract_post_generation_frames(self, session: Session, shot: Shot) -> None:
        """Bridge frame and representative style reference for the next shot."""
        video_url = await self._media.get_video_url(shot.video_asset_id)
        if not video_url:
            return
        try:
            shot.frame_bridge = await self._media.extract_bridge_frame(
                session.user_id, shot.video_asset_id, video_url, shot.id, "last"
            )
            frame = await self._media.extract_representative_frame(
                session.user_id, shot.video_asset_id, video_url, shot.id
            )
            shot.style_reference = await self._media.create_style_reference_from_video(
                shot.video_asset_id, frame
            )
        except Exception as e:
            logger.warning(f"Post-generation frame extraction failed for shot {shot.id}: {e}")

    def _build_generation_options(
        self,
        shot: Shot,
        provider: str,
        strategy: ContinuityStrategy,
        mechanism: MechanismResult,
        inherited_seed: Optional[int],
        session: Session,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {"model": shot.model_id}
        if mechanism.start_image_url:
            options["startImage"] = mechanism.start_image_url
        if shot.character_asset_id:
            options["characterAssetId"] = shot.character_asset_id
            options["autoKeyframe"] = shot.generation_mode == "standard"
        if self._seeds.supports_seed_persistence(provider, shot.model_id):
            options.update(self._seeds.build_seed_param(provider, inherited_seed))

        if strategy.type == "native-style-ref":
            style_ref = resolve_style_reference(session, shot)
            shot.style_reference = style_ref
            options = self._capabilities.build_generation_options(
                provider, options, style_ref, shot.style_strength
            )
        return options

    # ------------------------------------------------------------------
    # Mechanism resolution
    # ------------------------------------------------------------------

    async def resolve_mechanism(self, context: MechanismContext) -> MechanismResult:
        """Try each handler for the generation mode; the first result wins."""
        chain: list[MechanismHandler]
        if context.is_continuity:
            chain = [
                self._apply_scene_proxy,
                self._apply_native_style_reference,
                self._apply_frame_bridge,
                self._apply_ip_adapter,
            ]
        else:
            chain = [
                self._apply_standard_frame_bridge,
                self._apply_seed_only,
            ]

        for handler in chain:
            result = await handler(context)
            if result is not None:
                logger.debug(f"Shot {context.shot.id}: mechanism {result.mechanism}")
                return result
        return MechanismResult(mechanism="none")

    async def _apply_scene_proxy(self, context: MechanismContext) -> Optional[MechanismResult]:
        session, shot = context.session, context.shot
        if session.scene_proxy is None:
            return None
        if not self._anchors.should_use_scene_proxy(session, shot, context.mode):
            return None

        render = await self._scene_proxies.render_from_proxy(
            session.user_id, session.scene_proxy, shot.id, shot.camera
        )
        shot.scene_proxy_render_url = render.render_url
        return MechanismResult(start_image_url=render.render_url, mechanism="scene-proxy")

    async def _apply_native_style_reference(self, context: MechanismContext) -> Optional[MechanismResult]:
        if context.strategy.type != "native-style-ref":
            return None
        return MechanismResult(mechanism="native-style-ref")

    async def _apply_frame_bridge(self, context: MechanismContext) -> Optional[MechanismResult]:
        if context.strategy.type != "frame-bridge" or context.shot.frame_bridge is None:
            return None
        return MechanismResult(start_image_url=context.shot.frame_bridge.frame_url, mechanism="frame-bridge")

    async def _apply_ip_adapter(self, context: MechanismContext) -> Optional[MechanismResult]:
        if context.strategy.type != "ip-adapter":
            return None
        session, shot = context.session, context.shot

        self._set_status(shot, "generating-keyframe")
        await self.persist_shot_result(session.id, shot, fallback_session=session)

        style_ref = resolve_style_reference(session, shot)
        shot.style_reference = style_ref

        if not context.requires_character:
            start_image_url = await self._media.generate_styled_keyframe(
                shot.user_prompt, style_ref.frame_url, shot.style_strength, style_ref.aspect_ratio
            )
            shot.generated_keyframe_url = start_image_url
            return MechanismResult(start_image_url=start_image_url, mechanism="ip-adapter")

        if self._character_keyframes is None or not self._character_keyframes.available:
            raise CharacterConsistencyUnavailableError()
        character_asset_id = shot.character_asset_id
        if not character_asset_id and session.default_settings.use_character_consistency:
            character_asset_id = resolve_character_from_session(session)
        if not character_asset_id:
            raise InvalidSessionRequestError(
                "Character consistency requested but no character_asset_id provided"
            )

        face_strength = shot.face_strength if shot.face_strength is not None else self._default_face_strength
        start_image_url = await self._character_keyframes.generate_keyframe(
            session.user_id,
            shot.user_prompt,
            character_asset_id,
            face_strength,
            style_ref.aspect_ratio,
        )
        shot.face_strength = face_strength

        if context.mode == "style-match":
            transfer = await self._grading.match_image_palette(
                session.user_id, start_image_url, style_ref.frame_url
            )
            if transfer.applied and transfer.image_url:
                start_image_url = transfer.image_url
                shot.style_transfer_applied = True
            else:
                shot.style_degraded = True
                shot.style_degraded_reason = STYLE_TRANSFER_UNAVAILABLE_REASON

        shot.generated_keyframe_url = start_image_url
        return MechanismResult(start_image_url=start_image_url, mechanism="pulid-keyframe")

    async def _apply_standard_frame_bridge(self, context: MechanismContext) -> Optional[MechanismResult]:
        if context.strategy.type != "frame-bridge" or context.shot.frame_bridge is None:
            return None
        return MechanismResult(start_image_url=context.shot.frame_bridge.frame_url, mechanism="frame-bridge")

    async def _apply_seed_only(self, context: MechanismContext) -> Optional[MechanismResult]:
        if not context.supports_seed_persistence or context.inherited_seed is None:
            return None
        return MechanismResult(mechanism="seed-only")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def persist_shot_result(
        self,
        session_id: str,
        shot: Shot,
        fallback_session: Optional[Session] = None,
    ) -> Session:
        """Merge ``shot`` into the freshest stored session with a CAS write.

        Each attempt re-reads the session, replaces the shot by id (or
        appends it) and writes with the version it read. Conflicts are
        retried up to ``persist_max_attempts`` times, then re-raised. If the
        session has disappeared, ``fallback_session`` is saved instead.

        Raises:
            VersionMismatchError: If every attempt lost a race.
            SessionNotFoundError: If the session is gone and no fallback
                was given.
        """
        persisted: Optional[Session] = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._persist_max_attempts),
            retry=retry_if_exception_type(VersionMismatchError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                fresh = await self._store.get(session_id)
                if fresh is None:
                    if fallback_session is None:
                        raise SessionNotFoundError(session_id)
                    # A session deleted mid-generation is recreated from this run's copy
                    fallback_session.merge_shot(shot.model_copy(deep=True))
                    fallback_session.updated_at = utcnow()
                    await self._store.save(fallback_session)
                    persisted = fallback_session
                else:
                    fresh.merge_shot(shot.model_copy(deep=True))
                    fresh.updated_at = utcnow()
                    await self._store.save_with_version(fresh, fresh.version)
                    persisted = fresh
        return persisted

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _set_status(shot: Shot, status: ShotStatus) -> None:
        shot.transition_to(status)

    @staticmethod
    def _fail(shot: Shot, error: Exception) -> None:
        shot.transition_to("failed")
        shot.error = str(error) or type(error).__name__
        shot.generated_at = utcnow()
        logger.error(f"Shot {shot.id} generation failed: {shot.error}")

    @staticmethod
    def _notify(callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.warning(f"Shot generation observer raised: {e}")


def _fmt_score(score: Optional[float]) -> str:
    return "n/a" if score is None else f"{score:.3f}"
