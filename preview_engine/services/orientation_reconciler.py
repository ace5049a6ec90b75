"""
Orientation changes: serve the selected style from the cache for the new
canvas shape, or mark its preview as pending. Never calls the backend.
"""
import logging

from preview_engine.config import settings
from preview_engine.models import Orientation
from preview_engine.services.preview_orchestrator import PreviewOrchestrator
from preview_engine.utils.logging_config import log_preview_event

logger = logging.getLogger(__name__)


class OrientationReconciler:
    def __init__(self, orchestrator: PreviewOrchestrator):
        self.orchestrator = orchestrator
        self.session = orchestrator.session
        self.cache = orchestrator.cache

    def on_orientation_change(self, new_orientation: Orientation) -> None:
        new_orientation = Orientation(new_orientation)
        if new_orientation == self.session.orientation:
            return

        previous = self.session.orientation
        self.session.orientation = new_orientation
        logger.info(f"Orientation changed {previous.value} -> {new_orientation.value}")

        # The in-flight request owns the preview until it settles
        if self.orchestrator.is_busy:
            return

        style_id = self.session.selected_style_id
        if not style_id:
            self.session.orientation_preview_pending = False
            return

        if style_id == settings.ORIGINAL_IMAGE_STYLE_ID:
            self.orchestrator.show_original(style_id, new_orientation)
            return

        entry = self.cache.get(style_id, new_orientation)
        if entry is not None:
            self.orchestrator.apply_cache_entry(style_id, entry)
            self.session.orientation_preview_pending = False
            self.orchestrator.reset_stage()
            log_preview_event(logger, style_id, "Orientation served from cache", new_orientation.value)
            return

        # Keep the previous preview (tagged with its own orientation) until regenerated
        self.session.orientation_preview_pending = True
        log_preview_event(logger, style_id, "Orientation preview pending", new_orientation.value)
