"""Shared pytest fixtures for preview engine tests."""

import asyncio
from io import BytesIO
from typing import List, Optional

import pytest
from PIL import Image

from preview_engine.engine import PreviewEngine
from preview_engine.models import CallerIdentity, StyleOption, Tier
from preview_engine.services.entitlements import EntitlementSnapshot
from preview_engine.services.generation_client import (
    GenerationFailure,
    GenerationRequest,
    GenerationResult,
    GenerationStage,
    GenerationSuccess,
)
from preview_engine.services.preview_events import PreviewEventListener


def make_png(color=(200, 40, 40), size=(8, 6)) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


# ============================================================================
# Fakes
# ============================================================================


class FakeEntitlementsProvider:
    """Returns a fixed snapshot; counts fetches. With ``hold`` each fetch waits for ``release``"""

    def __init__(self, snapshot: Optional[EntitlementSnapshot] = None, error: Optional[Exception] = None,
                 hold: bool = False):
        self.snapshot = snapshot
        self.error = error
        self.calls = 0
        self.hold = hold
        self.release = asyncio.Event()
        self.started = asyncio.Event()

    async def fetch(self, identity):
        self.calls += 1
        self.started.set()
        if self.hold:
            await self.release.wait()
        if self.error:
            raise self.error
        return self.snapshot


class FakeGenerationClient:
    """
    Records requests and returns queued results.

    When ``hold`` is set, each call waits for ``release`` before returning,
    so tests can overlap requests.
    """

    def __init__(self, results: Optional[List[GenerationResult]] = None, hold: bool = False,
                 remaining_tokens: Optional[int] = None):
        self.results = list(results or [])
        self.requests: List[GenerationRequest] = []
        self.hold = hold
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.remaining_tokens = remaining_tokens

    async def generate(self, request, observer=None):
        self.requests.append(request)
        self.started.set()
        if observer:
            observer.on_stage(GenerationStage.GENERATING)
        if self.hold:
            await self.release.wait()
        if observer:
            observer.on_stage(GenerationStage.POLLING)
        if self.results:
            return self.results.pop(0)
        if self.remaining_tokens is not None:
            self.remaining_tokens -= 1
        return GenerationSuccess(
            preview_url=f"https://cdn.example.com/{request.style_id}/{request.aspect_ratio}.jpg",
            requires_watermark=True,
            remaining_tokens=self.remaining_tokens,
            tier="free",
        )


class RecordingListener(PreviewEventListener):
    def __init__(self):
        self.stages = []
        self.states = []
        self.upgrade_prompts = []
        self.auth_requests = []

    def on_stage(self, style_id, stage, message):
        self.stages.append((style_id, stage))

    def on_preview_state(self, style_id, state):
        self.states.append((style_id, state))

    def on_upgrade_prompt(self, gate):
        self.upgrade_prompts.append(gate)

    def on_auth_required(self, style_id, options):
        self.auth_requests.append((style_id, options))


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def styles() -> List[StyleOption]:
    return [
        StyleOption(id="original-image", name="Original Image"),
        StyleOption(id="oil-painting", name="Oil Painting"),
        StyleOption(id="watercolor-dreams", name="Watercolor Dreams"),
        StyleOption(id="neon-splash", name="Neon Splash"),
        StyleOption(id="gallery-acrylic", name="Gallery Acrylic", is_premium=True, required_tier=Tier.CREATOR),
    ]


@pytest.fixture
def identity() -> CallerIdentity:
    return CallerIdentity(user_id="user-1", access_token="token-1")


@pytest.fixture
def snapshot() -> EntitlementSnapshot:
    return EntitlementSnapshot(tier=Tier.FREE, quota=10, remaining_tokens=3)


@pytest.fixture
def provider(snapshot) -> FakeEntitlementsProvider:
    return FakeEntitlementsProvider(snapshot)


@pytest.fixture
def client() -> FakeGenerationClient:
    return FakeGenerationClient(remaining_tokens=3)


@pytest.fixture
def listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def make_engine(styles, identity, provider, client, listener):
    def _make(**overrides) -> PreviewEngine:
        options = dict(
            identity=identity,
            client=client,
            entitlements_provider=provider,
            listener=listener,
            require_auth=False,
            error_cooldown=0.01,
            ready_reset=0.01,
        )
        options.update(overrides)
        return PreviewEngine(styles, **options)

    return _make


@pytest.fixture
def engine(make_engine, png_bytes) -> PreviewEngine:
    engine = make_engine()
    engine.upload_photo(png_bytes)
    return engine


def quota_failure(remaining: Optional[int] = 0) -> GenerationFailure:
    return GenerationFailure(code="quota_exceeded", message="Limit reached", remaining_tokens=remaining)
