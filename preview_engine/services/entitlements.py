"""
Entitlement Service
Holds the session's preview allowance and keeps it in sync with the backend.
"""
import asyncio
import logging
from dataclasses import replace
from typing import Optional, Protocol

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from preview_engine.config import settings
from preview_engine.errors import EntitlementUnavailable
from preview_engine.models import (
    CallerIdentity,
    EntitlementState,
    EntitlementStatus,
    EntitlementUpdate,
    Priority,
    Tier,
    now_ms,
)

logger = logging.getLogger(__name__)


def tier_from_server(value: Optional[str], dev_override: bool = False) -> Tier:
    if dev_override:
        return Tier.DEV
    try:
        tier = Tier((value or "free").lower())
    except ValueError:
        return Tier.FREE
    return tier


def priority_from_tier(tier: Tier) -> Priority:
    if tier in (Tier.PRO, Tier.DEV):
        return Priority.PRO
    if tier in (Tier.CREATOR, Tier.PLUS):
        return Priority.PRIORITY
    return Priority.NORMAL


def requires_watermark_from_tier(tier: Tier) -> bool:
    return tier in (Tier.ANONYMOUS, Tier.FREE)


class EntitlementSnapshot(BaseModel):
    """Entitlements as reported by the backend for a signed-in user"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tier: Tier = Tier.FREE
    quota: Optional[int] = None
    remaining_tokens: Optional[int] = Field(None, alias="remainingTokens")
    requires_watermark: Optional[bool] = Field(None, alias="requiresWatermark")
    priority: Optional[Priority] = None
    renew_at: Optional[str] = Field(None, alias="renewAt")
    soft_remaining: Optional[int] = Field(None, alias="softRemaining")
    dev_override: bool = Field(False, alias="devOverride")

    @field_validator("tier", mode="before")
    @classmethod
    def _parse_tier(cls, value):
        if isinstance(value, Tier):
            return value
        return tier_from_server(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _parse_priority(cls, value):
        # Unknown priorities fall back to the tier default
        if isinstance(value, str):
            value = value.lower()
            return value if value in Priority._value2member_map_ else None
        return value

    @model_validator(mode="after")
    def _apply_dev_override(self):
        if self.dev_override:
            self.tier = Tier.DEV
        return self


class EntitlementsProvider(Protocol):
    async def fetch(self, identity: CallerIdentity) -> Optional[EntitlementSnapshot]:
        ...


class HttpEntitlementsProvider:
    """Fetches entitlements from the backend entitlements endpoint"""

    def __init__(self, url: Optional[str] = None, timeout: float = 15.0):
        self.url = url or settings.ENTITLEMENTS_API_URL
        self.timeout = timeout

    async def fetch(self, identity: CallerIdentity) -> Optional[EntitlementSnapshot]:
        """
        Returns None while the account's entitlements are still provisioning.

        Raises:
            EntitlementUnavailable: On an error status or a malformed payload
        """
        headers = dict(settings.api_headers)
        if identity.access_token:
            headers["Authorization"] = f"Bearer {identity.access_token}"

        async with aiohttp.ClientSession() as session:
            async with session.get(
                self.url,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                if response.status == 204:
                    return None
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(f"Entitlements API error: {response.status} - {error_text}")
                    raise EntitlementUnavailable(f"Entitlements request failed ({response.status})")
                payload = await response.json(content_type=None)

        try:
            return EntitlementSnapshot.model_validate(payload or {})
        except ValidationError as e:
            logger.error(f"Malformed entitlements response: {e}")
            raise EntitlementUnavailable("Malformed entitlements response") from e


class EntitlementStore:
    """
    Session-wide entitlement state.

    Two writers touch this state: ``hydrate()`` (session subsystem) and
    ``apply_update()`` (generation responses). Updates are merged field by
    field so a generation response never reverts fields it did not report.
    """

    def __init__(self, provider: EntitlementsProvider, identity: Optional[CallerIdentity] = None,
                 state: Optional[EntitlementState] = None):
        self.provider = provider
        self.identity = identity or CallerIdentity()
        self.state = state or EntitlementState()
        self.generation_count = 0
        self._hydrate_task: Optional[asyncio.Task] = None

    async def hydrate(self) -> None:
        """
        Load entitlements for the current caller.

        Concurrent callers share one request. The request is shielded, so a
        caller cancelled while waiting never leaves the state in ``loading``.
        """
        if self._hydrate_task is None or self._hydrate_task.done():
            self._hydrate_task = asyncio.create_task(self._hydrate(self.identity))
        await asyncio.shield(self._hydrate_task)

    async def _hydrate(self, identity: CallerIdentity) -> None:
        self.state = replace(self.state, status=EntitlementStatus.LOADING, error=None)

        try:
            state = await self._load(identity)
        except Exception as e:
            logger.error(f"Failed to load entitlements: {e}", exc_info=True)
            state = replace(
                self.state,
                status=EntitlementStatus.ERROR,
                error=str(e) or "Failed to load entitlements",
                last_synced_at=now_ms(),
            )

        if identity is not self.identity:
            logger.info("Discarding entitlements loaded for a previous caller")
            return
        if state is None:
            # Still provisioning; the gate reports loading as unverified
            logger.info("Entitlements not yet available for user %s", identity.user_id)
            return

        if state.quota is not None and state.remaining_tokens is not None:
            self.generation_count = max(0, state.quota - state.remaining_tokens)
        self.state = state

    async def _load(self, identity: CallerIdentity) -> Optional[EntitlementState]:
        if not identity.is_authenticated:
            logger.info("Entitlements hydrated for anonymous caller")
            return EntitlementState(
                status=EntitlementStatus.READY,
                tier=Tier.ANONYMOUS,
                requires_watermark=True,
                priority=Priority.NORMAL,
                soft_remaining=self.state.soft_remaining,
                last_synced_at=now_ms(),
            )

        snapshot = await self.provider.fetch(identity)
        if snapshot is None:
            return None

        requires_watermark = snapshot.requires_watermark
        if requires_watermark is None:
            requires_watermark = requires_watermark_from_tier(snapshot.tier)

        logger.info(
            f"Entitlements hydrated | tier={snapshot.tier.value} "
            f"remaining={snapshot.remaining_tokens} quota={snapshot.quota}"
        )
        return EntitlementState(
            status=EntitlementStatus.READY,
            tier=snapshot.tier,
            quota=snapshot.quota,
            remaining_tokens=snapshot.remaining_tokens,
            requires_watermark=requires_watermark,
            priority=snapshot.priority or priority_from_tier(snapshot.tier),
            renew_at=snapshot.renew_at,
            soft_remaining=snapshot.soft_remaining,
            last_synced_at=now_ms(),
        )

    def apply_update(self, update: EntitlementUpdate) -> EntitlementState:
        """Merge a partial payload from a generation response or error"""
        current = self.state
        changes = {
            "status": EntitlementStatus.READY,
            "error": None,
            "last_synced_at": now_ms(),
        }

        if update.remaining_tokens is not None:
            changes["remaining_tokens"] = update.remaining_tokens
        if update.soft_remaining is not None:
            changes["soft_remaining"] = update.soft_remaining

        tier = current.tier
        if update.tier:
            tier = tier_from_server(update.tier, current.tier == Tier.DEV)
            changes["tier"] = tier
            changes["priority"] = priority_from_tier(tier)

        if update.priority and update.priority.lower() in Priority._value2member_map_:
            changes["priority"] = Priority(update.priority.lower())

        if update.requires_watermark is not None:
            changes["requires_watermark"] = update.requires_watermark
        elif update.tier:
            changes["requires_watermark"] = requires_watermark_from_tier(tier)

        self.state = replace(current, **changes)
        return self.state

    def increment_generation_count(self) -> int:
        self.generation_count += 1
        return self.generation_count

    def set_identity(self, identity: CallerIdentity) -> None:
        """Switch caller (sign-in / sign-out); entitlements must be re-hydrated"""
        self.identity = identity
        self.state = EntitlementState()
        self.generation_count = 0
        self._hydrate_task = None
