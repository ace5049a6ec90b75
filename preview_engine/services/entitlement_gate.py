"""
Entitlement Gate
Decides whether a new preview generation may proceed.
"""
import logging
from typing import Optional

from preview_engine.config import settings
from preview_engine.errors import EntitlementUnavailable, PreviewError, QuotaExceeded, TierRestricted
from preview_engine.models import (
    EntitlementState,
    EntitlementStatus,
    GateReason,
    GateResult,
    Tier,
)
from preview_engine.services.entitlements import EntitlementStore
from preview_engine.services.style_catalog import StyleCatalog

logger = logging.getLogger(__name__)

QUOTA_EXCEEDED_MESSAGE = "You have reached the current generation limit."
UNVERIFIED_MESSAGE = "Loading your usage limits. Please try again in a moment."


def evaluate_gate(style_id: Optional[str], state: EntitlementState,
                  catalog: Optional[StyleCatalog] = None) -> GateResult:
    """
    Pure gate evaluation.

    Checks run in order: entitlement readiness, quota, then the tier
    requirement of the style. Nothing is fetched here; an unverified state
    must be hydrated by the caller first.
    """
    if state.status != EntitlementStatus.READY:
        return GateResult(
            allowed=False,
            reason=GateReason.ENTITLEMENT_UNVERIFIED,
            message=UNVERIFIED_MESSAGE,
        )

    if state.remaining_tokens is not None and state.remaining_tokens <= 0:
        return _quota_exceeded()

    if state.tier == Tier.ANONYMOUS and state.soft_remaining is not None and state.soft_remaining <= 0:
        return _quota_exceeded()

    if not style_id or catalog is None:
        return GateResult(allowed=True)

    style = catalog.get(style_id)
    if style is None or not (style.is_premium or style.required_tier):
        return GateResult(allowed=True)

    required = style.required_tier or Tier(settings.DEFAULT_PREMIUM_TIER)
    if state.tier == Tier.DEV or state.tier.rank >= required.rank:
        return GateResult(allowed=True)

    return GateResult(
        allowed=False,
        reason=GateReason.TIER_RESTRICTED,
        message=f"Upgrade to {required.label} to unlock this premium style.",
        cta_text="View Plans",
        required_tier=required,
    )


def gate_error(gate: GateResult) -> PreviewError:
    """Exception form of a rejected gate check"""
    if gate.reason == GateReason.QUOTA_EXCEEDED:
        return QuotaExceeded(gate.message or QUOTA_EXCEEDED_MESSAGE, remaining_tokens=None)
    if gate.reason == GateReason.TIER_RESTRICTED:
        required = gate.required_tier.value if gate.required_tier else None
        return TierRestricted(gate.message or "", required_tier=required)
    return EntitlementUnavailable(gate.message or UNVERIFIED_MESSAGE)


def _quota_exceeded() -> GateResult:
    return GateResult(
        allowed=False,
        reason=GateReason.QUOTA_EXCEEDED,
        message=QUOTA_EXCEEDED_MESSAGE,
        cta_text="Upgrade for more generations",
    )


class EntitlementGate:
    """Gate bound to the live entitlement store; results are never cached"""

    def __init__(self, entitlements: EntitlementStore, catalog: Optional[StyleCatalog] = None):
        self.entitlements = entitlements
        self.catalog = catalog

    def evaluate(self, style_id: Optional[str]) -> GateResult:
        result = evaluate_gate(style_id, self.entitlements.state, self.catalog)
        if not result.allowed:
            logger.info(f"Style {style_id} | Gate blocked | reason={result.reason.value}")
        return result

    def can_generate_more(self) -> bool:
        return self.evaluate(None).allowed
