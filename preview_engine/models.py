"""Shared data model for the preview engine."""

from __future__ import annotations

import base64
import hashlib
import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from functools import cached_property
from io import BytesIO
from typing import Any, Dict, Optional

from PIL import Image


def now_ms() -> int:
    return int(time.time() * 1000)


def compute_image_digest(data: bytes) -> str:
    """SHA-256 of the image bytes (never of a filename or URL)"""
    return hashlib.sha256(data).hexdigest()


class Orientation(str, Enum):
    SQUARE = "square"
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"

    @property
    def aspect_ratio(self) -> str:
        return ORIENTATION_TO_ASPECT[self]


ORIENTATION_TO_ASPECT: Dict[Orientation, str] = {
    Orientation.SQUARE: "1:1",
    Orientation.HORIZONTAL: "3:2",
    Orientation.VERTICAL: "2:3",
}


class PreviewStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class PreviewStage(str, Enum):
    """Progress stage of the style currently served by an orchestrator slot."""

    IDLE = "idle"
    ANIMATING = "animating"
    GENERATING = "generating"
    POLLING = "polling"
    WATERMARKING = "watermarking"
    READY = "ready"
    ERROR = "error"

    @property
    def message(self) -> Optional[str]:
        return STAGE_MESSAGES.get(self)


STAGE_MESSAGES: Dict[PreviewStage, str] = {
    PreviewStage.ANIMATING: "Summoning the studio…",
    PreviewStage.GENERATING: "Sketching base strokes…",
    PreviewStage.POLLING: "Layering textures…",
    PreviewStage.WATERMARKING: "Applying watermark…",
    PreviewStage.READY: "Preview ready",
    PreviewStage.ERROR: "Generation failed",
}


class PreviewOutcome(str, Enum):
    """How a single preview request ended."""

    DROPPED = "dropped"
    ORIGINAL = "original"
    NO_SOURCE = "no_source"
    ENTITLEMENT_ERROR = "entitlement_error"
    BLOCKED_QUOTA = "blocked_quota"
    BLOCKED_TIER = "blocked_tier"
    BLOCKED_UNVERIFIED = "blocked_unverified"
    CACHE_HIT = "cache_hit"
    AUTH_REQUIRED = "auth_required"
    GENERATED = "generated"
    FAILED = "failed"
    QUOTA_EXCEEDED = "quota_exceeded"
    ABORTED = "aborted"


class EntitlementStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class Tier(str, Enum):
    ANONYMOUS = "anonymous"
    FREE = "free"
    CREATOR = "creator"
    PLUS = "plus"
    PRO = "pro"
    DEV = "dev"

    @property
    def rank(self) -> int:
        return TIER_ORDER[self]

    @property
    def label(self) -> str:
        return self.value.capitalize()


TIER_ORDER: Dict[Tier, int] = {
    Tier.ANONYMOUS: 0,
    Tier.FREE: 1,
    Tier.CREATOR: 2,
    Tier.PLUS: 3,
    Tier.PRO: 4,
    Tier.DEV: 5,
}


class Priority(str, Enum):
    NORMAL = "normal"
    PRIORITY = "priority"
    PRO = "pro"


class GateReason(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    ENTITLEMENT_UNVERIFIED = "entitlement_unverified"
    TIER_RESTRICTED = "tier_restricted"


@dataclass(frozen=True)
class StyleOption:
    """Catalog entry for an art style."""

    id: str
    name: str
    is_premium: bool = False
    required_tier: Optional[Tier] = None


@dataclass(frozen=True)
class SourceImage:
    """Raw bytes of a user image plus the metadata needed to send it."""

    data: bytes
    mime_type: str = "image/jpeg"
    width: Optional[int] = None
    height: Optional[int] = None

    @classmethod
    def from_bytes(cls, data: bytes) -> "SourceImage":
        """Inspect the bytes with Pillow to record format and dimensions."""
        try:
            img = Image.open(BytesIO(data))
            img_format = img.format.lower() if img.format else "jpeg"
            return cls(data=data, mime_type=f"image/{img_format}", width=img.width, height=img.height)
        except Exception as exc:
            raise ValueError(f"Unsupported image data: {exc}") from exc

    @cached_property
    def digest(self) -> str:
        """Content hash of these bytes, computed once per image"""
        return compute_image_digest(self.data)

    @property
    def data_uri(self) -> str:
        encoded = base64.b64encode(self.data).decode("utf-8")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(frozen=True)
class CropRegion:
    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class SmartCrop:
    """Result of the image pipeline's automatic crop for one orientation."""

    orientation: Orientation
    region: CropRegion
    image_width: int
    image_height: int
    generated_at: int
    generated_by: str = "smart"
    image: Optional[SourceImage] = None

    def to_crop_config(self) -> Dict[str, Any]:
        return {
            "x": self.region.x,
            "y": self.region.y,
            "width": self.region.width,
            "height": self.region.height,
            "orientation": self.orientation.value,
            "imageWidth": self.image_width,
            "imageHeight": self.image_height,
            "generatedAt": self.generated_at,
            "generatedBy": self.generated_by,
        }


@dataclass(frozen=True)
class StylePreviewCacheEntry:
    url: str
    orientation: Orientation
    generated_at: int
    storage_url: Optional[str] = None
    storage_path: Optional[str] = None
    source_storage_path: Optional[str] = None
    source_display_url: Optional[str] = None
    preview_log_id: Optional[str] = None
    crop_config: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class PreviewData:
    preview_url: str
    watermark_applied: bool
    started_at: int
    completed_at: int
    storage_url: Optional[str] = None
    storage_path: Optional[str] = None
    source_storage_path: Optional[str] = None
    source_display_url: Optional[str] = None
    preview_log_id: Optional[str] = None
    crop_config: Optional[Dict[str, Any]] = None

    @classmethod
    def from_cache_entry(cls, entry: StylePreviewCacheEntry, watermark_applied: bool) -> "PreviewData":
        return cls(
            preview_url=entry.url,
            watermark_applied=watermark_applied,
            started_at=entry.generated_at,
            completed_at=entry.generated_at,
            storage_url=entry.storage_url or entry.url,
            storage_path=entry.storage_path,
            source_storage_path=entry.source_storage_path,
            source_display_url=entry.source_display_url or entry.storage_url,
            preview_log_id=entry.preview_log_id,
            crop_config=entry.crop_config,
        )


@dataclass(frozen=True)
class PreviewState:
    """
    Preview of one style as seen by the UI.

    ``orientation`` is the orientation ``data`` was generated under. Data from a
    previous orientation is kept around but reported as stale.
    """

    status: PreviewStatus = PreviewStatus.IDLE
    data: Optional[PreviewData] = None
    orientation: Optional[Orientation] = None
    error: Optional[str] = None

    def is_stale_for(self, orientation: Orientation) -> bool:
        return self.data is not None and self.orientation is not None and self.orientation != orientation

    def with_status(self, status: PreviewStatus, error: Optional[str] = None) -> "PreviewState":
        return replace(self, status=status, error=error)


@dataclass(frozen=True)
class EntitlementState:
    status: EntitlementStatus = EntitlementStatus.IDLE
    tier: Tier = Tier.FREE
    quota: Optional[int] = None
    remaining_tokens: Optional[int] = None
    requires_watermark: bool = True
    priority: Priority = Priority.NORMAL
    renew_at: Optional[str] = None
    soft_remaining: Optional[int] = None
    error: Optional[str] = None
    last_synced_at: Optional[int] = None


@dataclass(frozen=True)
class EntitlementUpdate:
    """Partial entitlement payload; ``None`` means "not reported"."""

    remaining_tokens: Optional[int] = None
    requires_watermark: Optional[bool] = None
    tier: Optional[str] = None
    priority: Optional[str] = None
    soft_remaining: Optional[int] = None


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: Optional[GateReason] = None
    message: Optional[str] = None
    cta_text: Optional[str] = None
    required_tier: Optional[Tier] = None


@dataclass(frozen=True)
class CallerIdentity:
    """Who is asking for a preview; scopes idempotency keys per caller."""

    user_id: Optional[str] = None
    device_fingerprint: Optional[str] = None
    anon_token: Optional[str] = None
    access_token: Optional[str] = None

    @classmethod
    def anonymous(cls) -> "CallerIdentity":
        """Fresh anonymous visitor with a random fingerprint and token"""
        return cls(device_fingerprint=uuid.uuid4().hex, anon_token=uuid.uuid4().hex)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def token(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        if self.device_fingerprint or self.anon_token:
            return f"anon:{self.device_fingerprint or '-'}:{self.anon_token or '-'}"
        raise ValueError("Caller identity needs a user id or an anonymous fingerprint/token")


@dataclass
class CacheDiagnostics:
    hits: int = 0
    misses: int = 0
    evictions: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 1) if total else 0.0

    def to_dict(self) -> Dict[str, int]:
        return {"hits": self.hits, "misses": self.misses, "evictions": self.evictions}


@dataclass
class StartPreviewOptions:
    force: bool = False
    orientation_override: Optional[Orientation] = None
