"""
Preview Engine
Wires the preview components together and exposes the operations the UI
calls.
"""
import asyncio
import logging
from typing import Dict, Iterable, Optional

from preview_engine.models import (
    CacheDiagnostics,
    CallerIdentity,
    Orientation,
    PreviewOutcome,
    PreviewState,
    SmartCrop,
    SourceImage,
    StyleOption,
)
from preview_engine.services.batch_generator import BatchGenerator
from preview_engine.services.entitlement_gate import EntitlementGate
from preview_engine.services.entitlements import (
    EntitlementsProvider,
    EntitlementStore,
    HttpEntitlementsProvider,
)
from preview_engine.services.generation_client import GenerationClient, create_generation_client
from preview_engine.services.idempotency import IdempotencyKeyBuilder
from preview_engine.services.orientation_reconciler import OrientationReconciler
from preview_engine.services.preview_cache import PreviewCacheStore
from preview_engine.services.preview_events import PreviewEventListener, PreviewStateStore
from preview_engine.services.preview_orchestrator import PreviewOrchestrator
from preview_engine.services.preview_session import PreviewSession
from preview_engine.services.style_catalog import StyleCatalog
from preview_engine.utils.pending_registry import PendingGenerationRegistry

logger = logging.getLogger(__name__)

BATCH_SLOT = "batch"


class PreviewEngine:
    """
    One engine per visitor session.

    All collaborators are built here unless passed in; tests inject fakes
    for the generation client and the entitlements provider.
    """

    def __init__(
        self,
        styles: Iterable[StyleOption],
        identity: Optional[CallerIdentity] = None,
        client: Optional[GenerationClient] = None,
        entitlements_provider: Optional[EntitlementsProvider] = None,
        listener: Optional[PreviewEventListener] = None,
        cache_limit: Optional[int] = None,
        orientation: Orientation = Orientation.SQUARE,
        require_auth: Optional[bool] = None,
        error_cooldown: Optional[float] = None,
        ready_reset: Optional[float] = None,
    ):
        identity = identity or CallerIdentity.anonymous()
        self.catalog = StyleCatalog(styles)
        self.session = PreviewSession(identity=identity, orientation=orientation)
        self.cache = PreviewCacheStore(limit=cache_limit)
        self.listener = listener or PreviewEventListener()
        self.states = PreviewStateStore(self.listener)
        self.registry = PendingGenerationRegistry()
        self.entitlements = EntitlementStore(entitlements_provider or HttpEntitlementsProvider(), identity)
        self.gate = EntitlementGate(self.entitlements, self.catalog)
        self.client = client or create_generation_client()
        self.key_builder = IdempotencyKeyBuilder()

        shared = dict(
            session=self.session,
            cache=self.cache,
            gate=self.gate,
            entitlements=self.entitlements,
            catalog=self.catalog,
            client=self.client,
            registry=self.registry,
            states=self.states,
            listener=self.listener,
            key_builder=self.key_builder,
            require_auth=require_auth,
            error_cooldown=error_cooldown,
            ready_reset=ready_reset,
        )
        self.orchestrator = PreviewOrchestrator(**shared)
        self.batch_orchestrator = PreviewOrchestrator(**shared, slot=BATCH_SLOT, selects_style=False, prompt_upgrade=False)
        self.reconciler = OrientationReconciler(self.orchestrator)
        self.batch = BatchGenerator(self.batch_orchestrator, self.catalog)

        self.session.on_new_upload(self._on_new_upload)

    # ---- UI operations ----------------------------------------------------

    def start_preview(self, style_id: str, force: bool = False,
                      orientation_override: Optional[Orientation] = None) -> Optional[asyncio.Task]:
        return self.orchestrator.start_preview(style_id, force=force, orientation_override=orientation_override)

    async def run_preview(self, style_id: str, force: bool = False,
                          orientation_override: Optional[Orientation] = None) -> PreviewOutcome:
        return await self.orchestrator.run_preview(style_id, force=force, orientation_override=orientation_override)

    def get_preview_state(self, style_id: str) -> PreviewState:
        return self.states.get(style_id)

    def get_cache_diagnostics(self) -> CacheDiagnostics:
        return self.cache.diagnostics()

    def on_orientation_change(self, orientation: Orientation) -> None:
        self.reconciler.on_orientation_change(orientation)

    async def generate_batch(self, style_ids: Optional[Iterable[str]] = None, force: bool = False,
                             orientation_override: Optional[Orientation] = None) -> Dict[str, PreviewOutcome]:
        return await self.batch.generate_batch(style_ids, force=force, orientation_override=orientation_override)

    def upload_photo(self, data: bytes) -> SourceImage:
        """
        Replace the source photo.

        Raises:
            ValueError: If the bytes are not an image Pillow can read
        """
        image = SourceImage.from_bytes(data)
        self.session.set_uploaded_image(image)
        return image

    def set_cropped_image(self, data: Optional[bytes]) -> None:
        self.session.set_cropped_image(SourceImage.from_bytes(data) if data else None)

    def set_smart_crop(self, crop: SmartCrop) -> None:
        self.session.set_smart_crop(crop)

    def set_original_storage(self, storage_path: Optional[str], public_url: Optional[str] = None,
                             signed_url: Optional[str] = None,
                             signed_url_expires_at: Optional[float] = None) -> None:
        self.session.set_original_storage(storage_path, public_url, signed_url, signed_url_expires_at)

    def abort_preview(self) -> bool:
        return self.orchestrator.abort()

    def resume_pending_auth_preview(self) -> Optional[asyncio.Task]:
        return self.orchestrator.resume_pending_auth_preview()

    def sign_in(self, identity: CallerIdentity) -> Optional[asyncio.Task]:
        """Switch to a signed-in caller and replay a preview blocked on sign-in"""
        self.session.identity = identity
        self.entitlements.set_identity(identity)
        return self.resume_pending_auth_preview()

    # ---- internals --------------------------------------------------------

    def _on_new_upload(self) -> None:
        self.orchestrator.abort()
        self.batch_orchestrator.abort()
        self.cache.clear()
        self.states.reset()
        self.orchestrator.reset_stage()
        logger.info("New photo uploaded: preview cache and states reset")
