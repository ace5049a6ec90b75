"""
Preview events
Observer interface the UI layer implements, and the per-style state store
that publishes through it.
"""
from typing import Dict, Optional

from preview_engine.models import (
    EntitlementState,
    GateResult,
    PreviewStage,
    PreviewState,
    StartPreviewOptions,
)


class PreviewEventListener:
    """No-op base; override what the host UI cares about"""

    def on_stage(self, style_id: str, stage: PreviewStage, message: Optional[str]) -> None:
        pass

    def on_preview_state(self, style_id: str, state: PreviewState) -> None:
        pass

    def on_upgrade_prompt(self, gate: GateResult) -> None:
        pass

    def on_entitlements_updated(self, state: EntitlementState) -> None:
        pass

    def on_auth_required(self, style_id: str, options: StartPreviewOptions) -> None:
        pass


class PreviewStateStore:
    """One PreviewState per style, created lazily as idle"""

    def __init__(self, listener: Optional[PreviewEventListener] = None):
        self.listener = listener or PreviewEventListener()
        self._states: Dict[str, PreviewState] = {}

    def get(self, style_id: str) -> PreviewState:
        return self._states.get(style_id) or PreviewState()

    def set(self, style_id: str, state: PreviewState) -> None:
        self._states[style_id] = state
        self.listener.on_preview_state(style_id, state)

    def reset(self) -> None:
        for style_id in list(self._states):
            self.set(style_id, PreviewState())
