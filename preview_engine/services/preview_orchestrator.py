"""
Preview Orchestrator
Runs one style preview at a time per slot: gate, cache, remote generation,
state publication and stage reporting.
"""
import asyncio
import logging
from dataclasses import replace
from typing import Optional, Tuple

from preview_engine.config import settings
from preview_engine.errors import (
    Aborted,
    EntitlementUnavailable,
    GenerationFailed,
    NoSourceImage,
    PreviewError,
    QuotaExceeded,
    TierRestricted,
)
from preview_engine.models import (
    EntitlementStatus,
    EntitlementUpdate,
    GateReason,
    GateResult,
    Orientation,
    PreviewData,
    PreviewOutcome,
    PreviewStage,
    PreviewState,
    PreviewStatus,
    StartPreviewOptions,
    StylePreviewCacheEntry,
    now_ms,
)
from preview_engine.services.entitlement_gate import QUOTA_EXCEEDED_MESSAGE, EntitlementGate, gate_error
from preview_engine.services.entitlements import EntitlementStore
from preview_engine.services.generation_client import (
    GenerationClient,
    GenerationFailure,
    GenerationRequest,
    GenerationStage,
    GenerationSuccess,
)
from preview_engine.services.idempotency import IdempotencyKeyBuilder
from preview_engine.services.preview_cache import PreviewCacheStore
from preview_engine.services.preview_events import PreviewEventListener, PreviewStateStore
from preview_engine.services.preview_session import PreviewSession
from preview_engine.services.style_catalog import StyleCatalog
from preview_engine.utils.logging_config import log_error_with_context, log_preview_event
from preview_engine.utils.pending_registry import PendingGenerationRecord, PendingGenerationRegistry

logger = logging.getLogger(__name__)

ENTITLEMENT_ERROR_MESSAGE = "Unable to verify preview allowance. Please try again."
GENERIC_FAILURE_MESSAGE = "Preview failed. Please try again."
IDENTITY_ERROR_MESSAGE = "Unable to identify this session. Please reload and try again."

GATE_OUTCOMES = {
    GateReason.QUOTA_EXCEEDED: PreviewOutcome.BLOCKED_QUOTA,
    GateReason.TIER_RESTRICTED: PreviewOutcome.BLOCKED_TIER,
    GateReason.ENTITLEMENT_UNVERIFIED: PreviewOutcome.BLOCKED_UNVERIFIED,
}


class _StageRelay:
    """Forwards client stage callbacks while the request is still the active one"""

    def __init__(self, orchestrator: "PreviewOrchestrator", record: PendingGenerationRecord):
        self.orchestrator = orchestrator
        self.record = record

    def on_stage(self, stage: GenerationStage) -> None:
        if self.orchestrator.registry.is_active(self.record):
            self.orchestrator.set_stage(PreviewStage(stage.value), self.record.style_id)


class PreviewOrchestrator:
    """
    Per-style preview state machine.

    Stage path: idle -> animating -> generating -> polling -> [watermarking]
    -> ready, or -> error. Both ``ready`` and ``error`` fall back to ``idle``
    after a short cool-down unless the stage moved on in the meantime.

    One orchestrator serves a single slot. The main slot follows the user's
    selection; batch pre-warming runs in its own slot over the same cache,
    registry and state store.
    """

    def __init__(
        self,
        session: PreviewSession,
        cache: PreviewCacheStore,
        gate: EntitlementGate,
        entitlements: EntitlementStore,
        catalog: StyleCatalog,
        client: GenerationClient,
        registry: PendingGenerationRegistry,
        states: PreviewStateStore,
        listener: Optional[PreviewEventListener] = None,
        key_builder: Optional[IdempotencyKeyBuilder] = None,
        slot: str = "main",
        selects_style: bool = True,
        prompt_upgrade: bool = True,
        require_auth: Optional[bool] = None,
        error_cooldown: Optional[float] = None,
        ready_reset: Optional[float] = None,
    ):
        self.session = session
        self.cache = cache
        self.gate = gate
        self.entitlements = entitlements
        self.catalog = catalog
        self.client = client
        self.registry = registry
        self.states = states
        self.listener = listener or states.listener
        self.key_builder = key_builder or IdempotencyKeyBuilder()
        self.slot = slot
        self.selects_style = selects_style
        self.prompt_upgrade = prompt_upgrade
        self.require_auth = settings.REQUIRE_AUTH_FOR_PREVIEW if require_auth is None else require_auth
        self.error_cooldown = settings.ERROR_COOLDOWN_SECONDS if error_cooldown is None else error_cooldown
        self.ready_reset = settings.READY_RESET_SECONDS if ready_reset is None else ready_reset

        self.stage = PreviewStage.IDLE
        self.stage_message: Optional[str] = None
        self.stage_style_id: Optional[str] = None
        self.last_gate_result: Optional[GateResult] = None
        self.pending_auth: Optional[Tuple[str, StartPreviewOptions]] = None

        self._stage_version = 0
        self._revert_handle: Optional[asyncio.TimerHandle] = None

    # ---- public API -------------------------------------------------------

    def start_preview(
        self,
        style_id: str,
        force: bool = False,
        orientation_override: Optional[Orientation] = None,
    ) -> Optional[asyncio.Task]:
        """
        Fire-and-forget preview request.

        Returns the scheduled task, or None when the request was dropped or
        served synchronously (original image).

        Raises:
            ValueError: ``force`` for a style while this slot serves another one
        """
        options = StartPreviewOptions(force=force, orientation_override=orientation_override)
        launched = self._launch(style_id, options)
        if isinstance(launched, PreviewOutcome):
            return None
        return launched[1]

    async def run_preview(
        self,
        style_id: str,
        force: bool = False,
        orientation_override: Optional[Orientation] = None,
    ) -> PreviewOutcome:
        """Awaitable form of ``start_preview`` reporting how the request ended"""
        options = StartPreviewOptions(force=force, orientation_override=orientation_override)
        launched = self._launch(style_id, options)
        if isinstance(launched, PreviewOutcome):
            return launched

        record, task = launched
        try:
            return await task
        except asyncio.CancelledError:
            if record.token.cancelled:
                return PreviewOutcome.ABORTED
            raise

    def abort(self) -> bool:
        """Abort the generation this slot is running, if any"""
        record = self.registry.for_slot(self.slot)
        if record is None:
            return False

        self.registry.abort(record.style_id)
        state = self.states.get(record.style_id)
        if state.status == PreviewStatus.LOADING:
            restored = PreviewStatus.READY if state.data else PreviewStatus.IDLE
            self.states.set(record.style_id, state.with_status(restored))
        self.reset_stage()
        return True

    def resume_pending_auth_preview(self) -> Optional[asyncio.Task]:
        """Replay the preview intent recorded when sign-in was required"""
        if self.pending_auth is None:
            return None

        style_id, options = self.pending_auth
        self.pending_auth = None
        log_preview_event(logger, style_id, "Resuming preview after sign-in")
        return self.start_preview(
            style_id,
            force=options.force,
            orientation_override=options.orientation_override,
        )

    def get_preview_state(self, style_id: str) -> PreviewState:
        return self.states.get(style_id)

    @property
    def is_busy(self) -> bool:
        return self.registry.for_slot(self.slot) is not None

    # ---- stage reporting --------------------------------------------------

    def set_stage(self, stage: PreviewStage, style_id: Optional[str] = None,
                  message: Optional[str] = None) -> None:
        self._cancel_revert()
        self._stage_version += 1
        self.stage = stage
        self.stage_message = message if message is not None else stage.message
        if style_id is not None:
            self.stage_style_id = style_id
        self.listener.on_stage(self.stage_style_id, stage, self.stage_message)

        if stage == PreviewStage.ERROR:
            self._schedule_revert(self.error_cooldown)
        elif stage == PreviewStage.READY:
            self._schedule_revert(self.ready_reset)

    def reset_stage(self) -> None:
        self.set_stage(PreviewStage.IDLE)

    def _schedule_revert(self, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        version = self._stage_version
        self._revert_handle = loop.call_later(delay, self._revert_to_idle, version)

    def _revert_to_idle(self, version: int) -> None:
        self._revert_handle = None
        if version == self._stage_version:
            self.reset_stage()

    def _cancel_revert(self) -> None:
        if self._revert_handle is not None:
            self._revert_handle.cancel()
            self._revert_handle = None

    # ---- state helpers ----------------------------------------------------

    def apply_cache_entry(self, style_id: str, entry: StylePreviewCacheEntry) -> PreviewState:
        """Publish a cached preview as ready, with the live watermark flag"""
        data = PreviewData.from_cache_entry(entry, self.entitlements.state.requires_watermark)
        state = PreviewState(status=PreviewStatus.READY, data=data, orientation=entry.orientation)
        self.states.set(style_id, state)
        if self.session.orientation == entry.orientation:
            self.session.orientation_preview_pending = False
        return state

    def show_original(self, style_id: str, orientation: Orientation) -> bool:
        """Show the unmodified photo; no network and no cache entry"""
        source = self.session.display_source
        if source is None:
            self._fail(style_id, NoSourceImage())
            return False

        timestamp = now_ms()
        data = PreviewData(
            preview_url=source.data_uri,
            watermark_applied=False,
            started_at=timestamp,
            completed_at=timestamp,
        )
        self.states.set(style_id, PreviewState(status=PreviewStatus.READY, data=data, orientation=orientation))
        self.session.orientation_preview_pending = False
        self.stage_style_id = style_id
        self.reset_stage()
        return True

    def _fail(self, style_id: str, error: PreviewError) -> None:
        """Error state with the previous data kept as stale"""
        message = str(error) or GENERIC_FAILURE_MESSAGE
        previous = self.states.get(style_id)
        self.states.set(style_id, previous.with_status(PreviewStatus.ERROR, message))
        self.set_stage(PreviewStage.ERROR, style_id, message)
        log_preview_event(logger, style_id, "Preview failed", f"code={error.code} message={message}")

    def _hint(self, style_id: str, message: Optional[str]) -> None:
        """Idle with a hint; a previously ready image stays visible"""
        previous = self.states.get(style_id)
        self.states.set(style_id, replace(previous, status=PreviewStatus.IDLE, error=message))
        self.set_stage(PreviewStage.IDLE, style_id, message)

    def _block(self, style_id: str, gate: GateResult) -> PreviewOutcome:
        self.last_gate_result = gate
        self._hint(style_id, gate.message)
        error = gate_error(gate)
        if self.prompt_upgrade and isinstance(error, (QuotaExceeded, TierRestricted)):
            self.listener.on_upgrade_prompt(gate)
        log_preview_event(logger, style_id, "Preview blocked", f"code={error.code}")
        return GATE_OUTCOMES[gate.reason]

    # ---- request lifecycle ------------------------------------------------

    def _claim(self, style_id: str, force: bool) -> Optional[PendingGenerationRecord]:
        existing = self.registry.get(style_id)
        if existing is not None:
            if existing.slot != self.slot or not force:
                logger.debug(f"Style {style_id} | Dropped duplicate preview request ({self.slot})")
                return None
            return self.registry.supersede(style_id, self.slot)

        current = self.registry.for_slot(self.slot)
        if current is not None:
            if force:
                raise ValueError(
                    f"Slot {self.slot} is generating {current.style_id}; "
                    f"cannot force a preview for {style_id}"
                )
            logger.debug(f"Style {style_id} | Dropped; slot {self.slot} busy with {current.style_id}")
            return None

        return self.registry.register(style_id, self.slot)

    def _launch(self, style_id: str, options: StartPreviewOptions):
        record = self._claim(style_id, options.force)
        if record is None:
            return PreviewOutcome.DROPPED

        if self.selects_style:
            self.session.selected_style_id = style_id

        if style_id == settings.ORIGINAL_IMAGE_STYLE_ID:
            self.registry.release(record)
            target = options.orientation_override or self.session.orientation
            shown = self.show_original(style_id, target)
            return PreviewOutcome.ORIGINAL if shown else PreviewOutcome.NO_SOURCE

        task = asyncio.create_task(self._execute(record, options))
        record.token.bind(task)
        return record, task

    async def _execute(self, record: PendingGenerationRecord, options: StartPreviewOptions) -> PreviewOutcome:
        style_id = record.style_id
        try:
            return await self._generate(record, options)
        except asyncio.CancelledError:
            if not record.token.cancelled:
                raise
            logger.info(f"Style {style_id} | Preview request aborted ({self.slot})")
            return PreviewOutcome.ABORTED
        except Aborted:
            logger.info(f"Style {style_id} | Preview request aborted ({self.slot})")
            return PreviewOutcome.ABORTED
        except Exception as e:
            log_error_with_context(logger, e, "Unexpected preview failure", style_id)
            if self.registry.is_active(record):
                self._fail(style_id, GenerationFailed(GENERIC_FAILURE_MESSAGE))
            return PreviewOutcome.FAILED
        finally:
            self.registry.release(record)

    async def _generate(self, record: PendingGenerationRecord, options: StartPreviewOptions) -> PreviewOutcome:
        style_id = record.style_id
        target = options.orientation_override or self.session.orientation

        source = self.session.source_for(target)
        if source is None:
            self._fail(style_id, NoSourceImage())
            return PreviewOutcome.NO_SOURCE

        if self.entitlements.state.status != EntitlementStatus.READY:
            await self.entitlements.hydrate()
            if not self.registry.is_active(record):
                raise Aborted()
            self.listener.on_entitlements_updated(self.entitlements.state)
            if self.entitlements.state.status == EntitlementStatus.ERROR:
                self._fail(style_id, EntitlementUnavailable(ENTITLEMENT_ERROR_MESSAGE))
                return PreviewOutcome.ENTITLEMENT_ERROR

        gate = self.gate.evaluate(style_id)
        if not gate.allowed:
            return self._block(style_id, gate)

        if not options.force:
            entry = self.cache.get(style_id, target)
            if entry is not None:
                self.apply_cache_entry(style_id, entry)
                self.set_stage(PreviewStage.READY, style_id)
                log_preview_event(logger, style_id, "Served from cache", f"orientation={target.value}")
                return PreviewOutcome.CACHE_HIT

        if self.require_auth and not self.session.identity.is_authenticated:
            self.pending_auth = (style_id, options)
            self.reset_stage()
            self.listener.on_auth_required(style_id, options)
            log_preview_event(logger, style_id, "Sign-in required before preview")
            return PreviewOutcome.AUTH_REQUIRED

        identity = self.session.identity
        try:
            idempotency_key = self.key_builder.build(style_id, target, source.digest, identity)
        except ValueError as e:
            logger.error(f"Style {style_id} | Cannot build idempotency key: {e}")
            self._fail(style_id, GenerationFailed(IDENTITY_ERROR_MESSAGE))
            return PreviewOutcome.FAILED

        started_at = now_ms()
        self.states.set(style_id, self.states.get(style_id).with_status(PreviewStatus.LOADING))
        self.set_stage(PreviewStage.ANIMATING, style_id)

        style = self.catalog.get(style_id)
        request = GenerationRequest(
            source_image=source,
            style_id=style_id,
            style_name=style.name if style else style_id,
            aspect_ratio=target.aspect_ratio,
            idempotency_key=idempotency_key,
            access_token=identity.access_token,
            anon_token=identity.anon_token,
            source_storage_path=self.session.original_storage_path,
            source_display_url=self.session.source_display_url(),
            crop_config=self.session.crop_config_for(target),
        )

        result = await self.client.generate(request, _StageRelay(self, record))
        if not self.registry.is_active(record):
            logger.info(f"Style {style_id} | Discarding result of superseded request")
            raise Aborted()

        if isinstance(result, GenerationFailure):
            return self._handle_failure(style_id, result.to_exception())

        return self._handle_success(record, request, result, target, started_at)

    def _handle_success(self, record: PendingGenerationRecord, request: GenerationRequest,
                        result: GenerationSuccess, target: Orientation, started_at: int) -> PreviewOutcome:
        style_id = record.style_id
        completed_at = now_ms()
        source_storage_path = result.source_storage_path or request.source_storage_path
        source_display_url = result.source_display_url or request.source_display_url
        crop_config = result.crop_config or request.crop_config

        self.cache.put(style_id, StylePreviewCacheEntry(
            url=result.preview_url,
            orientation=target,
            generated_at=completed_at,
            storage_url=result.storage_url,
            storage_path=result.storage_path,
            source_storage_path=source_storage_path,
            source_display_url=source_display_url,
            preview_log_id=result.preview_log_id,
            crop_config=crop_config,
        ))

        entitlement_state = self.entitlements.apply_update(result.entitlement_update())
        self.entitlements.increment_generation_count()
        self.listener.on_entitlements_updated(entitlement_state)

        data = PreviewData(
            preview_url=result.preview_url,
            watermark_applied=result.requires_watermark,
            started_at=started_at,
            completed_at=completed_at,
            storage_url=result.storage_url or result.preview_url,
            storage_path=result.storage_path,
            source_storage_path=source_storage_path,
            source_display_url=source_display_url,
            preview_log_id=result.preview_log_id,
            crop_config=crop_config,
        )
        self.states.set(style_id, PreviewState(status=PreviewStatus.READY, data=data, orientation=target))
        self.registry.release(record)

        if self.session.orientation == target:
            self.session.orientation_preview_pending = False
        if self.selects_style:
            self.session.first_preview_completed = True

        self.set_stage(PreviewStage.READY, style_id)
        log_preview_event(
            logger, style_id, "Preview ready",
            f"orientation={target.value} remaining={entitlement_state.remaining_tokens} "
            f"took={completed_at - started_at}ms"
        )
        return PreviewOutcome.GENERATED

    def _handle_failure(self, style_id: str, error: PreviewError) -> PreviewOutcome:
        if isinstance(error, QuotaExceeded):
            remaining = error.remaining_tokens if error.remaining_tokens is not None else 0
            entitlement_state = self.entitlements.apply_update(EntitlementUpdate(remaining_tokens=remaining))
            self.listener.on_entitlements_updated(entitlement_state)

            gate = GateResult(
                allowed=False,
                reason=GateReason.QUOTA_EXCEEDED,
                message=str(error) or QUOTA_EXCEEDED_MESSAGE,
                cta_text="Upgrade for more generations",
            )
            self.last_gate_result = gate
            self._hint(style_id, gate.message)
            if self.prompt_upgrade:
                self.listener.on_upgrade_prompt(gate)
            log_preview_event(logger, style_id, "Quota exceeded", f"remaining={remaining}")
            return PreviewOutcome.QUOTA_EXCEEDED

        self._fail(style_id, error)
        return PreviewOutcome.FAILED
