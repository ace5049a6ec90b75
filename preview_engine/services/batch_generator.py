"""
Batch pre-warming of style previews
"""
import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from preview_engine.config import settings
from preview_engine.models import Orientation, PreviewOutcome, PreviewStatus, StyleOption
from preview_engine.services.preview_orchestrator import PreviewOrchestrator
from preview_engine.services.style_catalog import StyleCatalog

logger = logging.getLogger(__name__)

QUOTA_OUTCOMES = {PreviewOutcome.BLOCKED_QUOTA, PreviewOutcome.QUOTA_EXCEEDED}


class BatchGenerator:
    """
    Generates previews for several styles one after another.

    Runs through its own orchestrator slot, so the user's current selection is
    never interrupted. Only one batch runs at a time; a second call joins the
    running one and gets the same result.
    """

    def __init__(self, orchestrator: PreviewOrchestrator, catalog: StyleCatalog,
                 batch_size: Optional[int] = None):
        self.orchestrator = orchestrator
        self.catalog = catalog
        self.session = orchestrator.session
        self.batch_size = batch_size or settings.BATCH_DEFAULT_SIZE
        self._running: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running is not None and not self._running.done()

    async def generate_batch(
        self,
        style_ids: Optional[Iterable[str]] = None,
        force: bool = False,
        orientation_override: Optional[Orientation] = None,
    ) -> Dict[str, PreviewOutcome]:
        if self.is_running:
            logger.warning("Batch already running, joining the in-flight batch")
            return await asyncio.shield(self._running)

        target = orientation_override or self.session.orientation
        styles = self.select_styles(style_ids)
        if not styles:
            return {}

        if not force and all(self._is_ready(style.id, target) for style in styles):
            logger.debug("Batch skipped: every target style is already ready")
            return {}

        self._running = asyncio.create_task(self._run(styles, force, orientation_override))
        self._running.add_done_callback(self._on_done)
        return await asyncio.shield(self._running)

    def select_styles(self, style_ids: Optional[Iterable[str]] = None) -> List[StyleOption]:
        """Explicit ids in catalog order, or the selected style plus the first catalog styles"""
        if style_ids:
            return self.catalog.filter(style_ids)

        prioritized: List[StyleOption] = []
        if self.session.selected_style_id:
            selected = self.catalog.get(self.session.selected_style_id)
            if selected:
                prioritized.append(selected)

        for style in self.catalog:
            if len(prioritized) >= self.batch_size:
                break
            if style not in prioritized:
                prioritized.append(style)
        return prioritized

    def _is_ready(self, style_id: str, orientation: Orientation) -> bool:
        state = self.orchestrator.states.get(style_id)
        return state.status == PreviewStatus.READY and not state.is_stale_for(orientation)

    def _on_done(self, task: asyncio.Task) -> None:
        if self._running is task:
            self._running = None

    async def _run(self, styles: List[StyleOption], force: bool,
                   orientation_override: Optional[Orientation]) -> Dict[str, PreviewOutcome]:
        target = orientation_override or self.session.orientation
        registry = self.orchestrator.registry
        outcomes: Dict[str, PreviewOutcome] = {}
        prompted = False

        logger.info(f"Batch started | styles={[style.id for style in styles]} orientation={target.value}")

        for style in styles:
            if not force and self._is_ready(style.id, target):
                continue

            pending = registry.get(style.id)
            if pending is not None and pending.slot != self.orchestrator.slot:
                logger.debug(f"Style {style.id} | Batch skipped, in flight in slot {pending.slot}")
                continue

            if self.session.source_for(target) is None:
                logger.debug(f"Style {style.id} | Batch skipped, no source image")
                continue

            outcome = await self.orchestrator.run_preview(
                style.id,
                force=force,
                orientation_override=orientation_override,
            )
            outcomes[style.id] = outcome

            if outcome in QUOTA_OUTCOMES and not prompted:
                prompted = True
                gate = self.orchestrator.last_gate_result
                if gate is not None:
                    self.orchestrator.listener.on_upgrade_prompt(gate)

        generated = [style_id for style_id, outcome in outcomes.items() if outcome == PreviewOutcome.GENERATED]
        if generated:
            self.session.first_preview_completed = True

        summary = ", ".join(f"{style_id}={outcome.value}" for style_id, outcome in outcomes.items())
        logger.info(f"Batch finished | generated={len(generated)} | {summary}")
        return outcomes
