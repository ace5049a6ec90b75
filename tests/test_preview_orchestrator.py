"""Tests for the preview orchestrator, driven through PreviewEngine."""

import asyncio

import pytest

from conftest import FakeEntitlementsProvider, FakeGenerationClient, make_png, quota_failure
from preview_engine.models import (
    CallerIdentity,
    CropRegion,
    EntitlementStatus,
    EntitlementUpdate,
    Orientation,
    PreviewOutcome,
    PreviewStage,
    PreviewStatus,
    SmartCrop,
    SourceImage,
    StylePreviewCacheEntry,
    Tier,
)
from preview_engine.services.entitlements import EntitlementSnapshot
from preview_engine.services.generation_client import GenerationFailure, GenerationStage, GenerationSuccess

STYLE = "oil-painting"


def stages_for(listener, style_id):
    return [stage for sid, stage in listener.stages if sid == style_id]


class StubbornClient:
    """Backend call that ignores cancellation and still returns its result"""

    def __init__(self):
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.calls = 0

    async def generate(self, request, observer=None):
        self.calls += 1
        if self.calls > 1:
            return GenerationSuccess(preview_url="https://cdn.example.com/fresh.jpg")

        self.started.set()
        try:
            await self.release.wait()
        except asyncio.CancelledError:
            pass
        if observer:
            observer.on_stage(GenerationStage.WATERMARKING)
        return GenerationSuccess(preview_url="https://cdn.example.com/stale.jpg")


# ============================================================================
# Happy path
# ============================================================================


@pytest.mark.asyncio
async def test_generate_then_serve_from_cache(engine, client):
    outcome = await engine.run_preview(STYLE)

    assert outcome == PreviewOutcome.GENERATED
    state = engine.get_preview_state(STYLE)
    assert state.status == PreviewStatus.READY
    assert state.orientation == Orientation.SQUARE
    assert state.data.watermark_applied is True
    assert engine.entitlements.state.remaining_tokens == 2
    assert engine.entitlements.generation_count == 8
    assert engine.session.selected_style_id == STYLE
    assert engine.session.first_preview_completed

    outcome = await engine.run_preview(STYLE)

    assert outcome == PreviewOutcome.CACHE_HIT
    assert len(client.requests) == 1
    assert engine.entitlements.state.remaining_tokens == 2
    assert engine.get_cache_diagnostics().hits == 1


@pytest.mark.asyncio
async def test_request_is_built_from_session(engine, client):
    await engine.run_preview(STYLE, orientation_override=Orientation.HORIZONTAL)

    request = client.requests[0]
    assert request.style_name == "Oil Painting"
    assert request.aspect_ratio == "3:2"
    assert request.idempotency_key.startswith("pv1_")
    assert request.access_token == "token-1"
    assert engine.get_preview_state(STYLE).orientation == Orientation.HORIZONTAL
    assert engine.cache.has(STYLE, Orientation.HORIZONTAL)


@pytest.mark.asyncio
async def test_stage_sequence(engine, listener):
    await engine.run_preview(STYLE)

    assert stages_for(listener, STYLE)[:4] == [
        PreviewStage.ANIMATING,
        PreviewStage.GENERATING,
        PreviewStage.POLLING,
        PreviewStage.READY,
    ]

    await asyncio.sleep(0.05)
    assert engine.orchestrator.stage == PreviewStage.IDLE


@pytest.mark.asyncio
async def test_forced_repeat_reuses_idempotency_key(engine, client):
    await engine.run_preview(STYLE)
    await engine.run_preview(STYLE, force=True)

    assert len(client.requests) == 2
    assert client.requests[0].idempotency_key == client.requests[1].idempotency_key


# ============================================================================
# Deduplication and cancellation
# ============================================================================


@pytest.mark.asyncio
async def test_concurrent_requests_collapse(engine, client):
    outcomes = await asyncio.gather(engine.run_preview(STYLE), engine.run_preview(STYLE))

    assert sorted(o.value for o in outcomes) == ["dropped", "generated"]
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_duplicate_dropped_while_in_flight(make_engine, png_bytes):
    client = FakeGenerationClient(hold=True)
    engine = make_engine(client=client)
    engine.upload_photo(png_bytes)

    task = engine.start_preview(STYLE)
    await client.started.wait()

    assert engine.start_preview(STYLE) is None
    assert engine.start_preview("neon-splash") is None

    client.release.set()
    assert await task == PreviewOutcome.GENERATED
    assert len(client.requests) == 1


@pytest.mark.asyncio
async def test_force_for_other_style_while_busy_raises(make_engine, png_bytes):
    client = FakeGenerationClient(hold=True)
    engine = make_engine(client=client)
    engine.upload_photo(png_bytes)

    task = engine.start_preview(STYLE)
    await client.started.wait()

    with pytest.raises(ValueError):
        engine.start_preview("neon-splash", force=True)

    client.release.set()
    await task


@pytest.mark.asyncio
async def test_force_supersedes_in_flight_request(make_engine, png_bytes):
    client = FakeGenerationClient(hold=True)
    engine = make_engine(client=client)
    engine.upload_photo(png_bytes)

    first = engine.start_preview(STYLE)
    await client.started.wait()

    client.results = [GenerationSuccess(preview_url="https://cdn.example.com/second.jpg")]
    second = engine.start_preview(STYLE, force=True)
    client.release.set()

    assert await second == PreviewOutcome.GENERATED
    assert await first == PreviewOutcome.ABORTED
    assert engine.get_preview_state(STYLE).data.preview_url == "https://cdn.example.com/second.jpg"
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_late_result_of_superseded_request_is_ignored(make_engine, png_bytes, listener):
    client = StubbornClient()
    engine = make_engine(client=client)
    engine.upload_photo(png_bytes)

    first = engine.start_preview(STYLE)
    await client.started.wait()
    second = engine.start_preview(STYLE, force=True)

    outcomes = await asyncio.gather(first, second)

    assert outcomes == [PreviewOutcome.ABORTED, PreviewOutcome.GENERATED]
    assert engine.get_preview_state(STYLE).data.preview_url == "https://cdn.example.com/fresh.jpg"
    assert engine.cache.get(STYLE, Orientation.SQUARE).url == "https://cdn.example.com/fresh.jpg"
    assert PreviewStage.WATERMARKING not in stages_for(listener, STYLE)


@pytest.mark.asyncio
async def test_abort_preview(make_engine, png_bytes):
    client = FakeGenerationClient(hold=True)
    engine = make_engine(client=client)
    engine.upload_photo(png_bytes)

    task = engine.start_preview(STYLE)
    await client.started.wait()

    assert engine.abort_preview()
    assert await task == PreviewOutcome.ABORTED
    assert engine.get_preview_state(STYLE).status == PreviewStatus.IDLE
    assert engine.orchestrator.stage == PreviewStage.IDLE
    assert not engine.abort_preview()


# ============================================================================
# Gate and entitlements
# ============================================================================


@pytest.mark.asyncio
async def test_cache_hit_uses_live_watermark_flag(make_engine, png_bytes, client):
    provider = FakeEntitlementsProvider(EntitlementSnapshot(tier=Tier.PRO, quota=100, remaining_tokens=50))
    engine = make_engine(entitlements_provider=provider)
    engine.upload_photo(png_bytes)
    engine.cache.put(STYLE, StylePreviewCacheEntry(
        url="https://cdn.example.com/cached.jpg",
        orientation=Orientation.SQUARE,
        generated_at=1,
    ))

    outcome = await engine.run_preview(STYLE)

    assert outcome == PreviewOutcome.CACHE_HIT
    assert client.requests == []
    data = engine.get_preview_state(STYLE).data
    assert data.preview_url == "https://cdn.example.com/cached.jpg"
    assert data.watermark_applied is False


@pytest.mark.asyncio
async def test_gate_blocks_before_cache(make_engine, png_bytes, client, listener):
    provider = FakeEntitlementsProvider(EntitlementSnapshot(tier=Tier.FREE, quota=10, remaining_tokens=0))
    engine = make_engine(entitlements_provider=provider)
    engine.upload_photo(png_bytes)
    engine.cache.put(STYLE, StylePreviewCacheEntry(url="cached", orientation=Orientation.SQUARE, generated_at=1))

    outcome = await engine.run_preview(STYLE)

    assert outcome == PreviewOutcome.BLOCKED_QUOTA
    assert client.requests == []
    assert engine.get_cache_diagnostics().to_dict() == {"hits": 0, "misses": 0, "evictions": 0}
    state = engine.get_preview_state(STYLE)
    assert state.status == PreviewStatus.IDLE
    assert state.error == "You have reached the current generation limit."
    assert len(listener.upgrade_prompts) == 1
    assert engine.orchestrator.stage == PreviewStage.IDLE


@pytest.mark.asyncio
async def test_premium_style_blocked_for_free_tier(engine, client, listener):
    outcome = await engine.run_preview("gallery-acrylic")

    assert outcome == PreviewOutcome.BLOCKED_TIER
    assert client.requests == []
    assert engine.get_preview_state("gallery-acrylic").error == "Upgrade to Creator to unlock this premium style."
    assert listener.upgrade_prompts[0].required_tier == Tier.CREATOR


@pytest.mark.asyncio
async def test_blocked_preview_keeps_previous_image(engine):
    await engine.run_preview(STYLE)
    engine.entitlements.apply_update(EntitlementUpdate(remaining_tokens=0))

    outcome = await engine.run_preview(STYLE, force=True)

    assert outcome == PreviewOutcome.BLOCKED_QUOTA
    state = engine.get_preview_state(STYLE)
    assert state.status == PreviewStatus.IDLE
    assert state.data is not None


@pytest.mark.asyncio
async def test_entitlement_failure(make_engine, png_bytes, client):
    engine = make_engine(entitlements_provider=FakeEntitlementsProvider(error=RuntimeError("down")))
    engine.upload_photo(png_bytes)

    outcome = await engine.run_preview(STYLE)

    assert outcome == PreviewOutcome.ENTITLEMENT_ERROR
    state = engine.get_preview_state(STYLE)
    assert state.status == PreviewStatus.ERROR
    assert state.error == "Unable to verify preview allowance. Please try again."
    assert client.requests == []


@pytest.mark.asyncio
async def test_unverified_entitlements_block(make_engine, png_bytes):
    engine = make_engine(entitlements_provider=FakeEntitlementsProvider(None))
    engine.upload_photo(png_bytes)

    assert await engine.run_preview(STYLE) == PreviewOutcome.BLOCKED_UNVERIFIED


# ============================================================================
# Failures
# ============================================================================


@pytest.mark.asyncio
async def test_no_source_image(make_engine, provider, client):
    engine = make_engine()

    outcome = await engine.run_preview(STYLE)

    assert outcome == PreviewOutcome.NO_SOURCE
    state = engine.get_preview_state(STYLE)
    assert state.status == PreviewStatus.ERROR
    assert state.error == "Upload a photo to generate a preview."
    assert provider.calls == 0
    assert client.requests == []


@pytest.mark.asyncio
async def test_failure_keeps_stale_data_and_cools_down(make_engine, png_bytes, client):
    engine = make_engine(error_cooldown=0.2)
    engine.upload_photo(png_bytes)
    await engine.run_preview(STYLE)
    client.results = [GenerationFailure(message="Model crashed")]

    outcome = await engine.run_preview(STYLE, force=True)

    assert outcome == PreviewOutcome.FAILED
    state = engine.get_preview_state(STYLE)
    assert state.status == PreviewStatus.ERROR
    assert state.error == "Model crashed"
    assert state.data.preview_url.endswith("/oil-painting/1:1.jpg")
    assert engine.orchestrator.stage == PreviewStage.ERROR

    await asyncio.sleep(0.3)
    assert engine.orchestrator.stage == PreviewStage.IDLE


@pytest.mark.asyncio
async def test_quota_failure_updates_tokens(engine, client, listener):
    client.results = [quota_failure(remaining=None)]

    outcome = await engine.run_preview(STYLE)

    assert outcome == PreviewOutcome.QUOTA_EXCEEDED
    assert engine.entitlements.state.remaining_tokens == 0
    assert engine.get_preview_state(STYLE).status == PreviewStatus.IDLE
    assert len(listener.upgrade_prompts) == 1
    assert not engine.gate.can_generate_more()


@pytest.mark.asyncio
async def test_unexpected_client_error_is_contained(make_engine, png_bytes):
    class ExplodingClient:
        async def generate(self, request, observer=None):
            raise RuntimeError("socket on fire")

    engine = make_engine(client=ExplodingClient())
    engine.upload_photo(png_bytes)

    outcome = await engine.run_preview(STYLE)

    assert outcome == PreviewOutcome.FAILED
    assert engine.get_preview_state(STYLE).error == "Preview failed. Please try again."
    assert len(engine.registry) == 0


# ============================================================================
# Special cases
# ============================================================================


@pytest.mark.asyncio
async def test_original_image_is_served_locally(engine, client):
    task = engine.start_preview("original-image")

    assert task is None
    state = engine.get_preview_state("original-image")
    assert state.status == PreviewStatus.READY
    assert state.data.watermark_applied is False
    assert state.data.preview_url.startswith("data:image/png;base64,")
    assert client.requests == []
    assert len(engine.cache) == 0


@pytest.mark.asyncio
async def test_upload_clears_cache(engine, client):
    await engine.run_preview(STYLE)
    first_key = client.requests[0].idempotency_key

    engine.upload_photo(make_png((0, 0, 255)))

    assert len(engine.cache) == 0
    assert engine.get_preview_state(STYLE).status == PreviewStatus.IDLE
    assert engine.orchestrator.stage == PreviewStage.IDLE

    assert await engine.run_preview(STYLE) == PreviewOutcome.GENERATED
    assert client.requests[1].idempotency_key != first_key


@pytest.mark.asyncio
async def test_auth_gate_and_resume(make_engine, png_bytes, client, listener):
    engine = make_engine(
        identity=CallerIdentity(device_fingerprint="fp-1", anon_token="anon-1"),
        require_auth=True,
    )
    engine.upload_photo(png_bytes)

    outcome = await engine.run_preview(STYLE, orientation_override=Orientation.VERTICAL)

    assert outcome == PreviewOutcome.AUTH_REQUIRED
    assert listener.auth_requests[0][0] == STYLE
    assert client.requests == []

    task = engine.sign_in(CallerIdentity(user_id="user-9"))

    assert await task == PreviewOutcome.GENERATED
    assert client.requests[0].aspect_ratio == "2:3"
    assert engine.orchestrator.pending_auth is None


# ============================================================================
# Cancellation and caller identity
# ============================================================================


@pytest.mark.asyncio
async def test_superseded_during_hydrate_keeps_entitlements_usable(make_engine, png_bytes, snapshot, client):
    provider = FakeEntitlementsProvider(snapshot, hold=True)
    engine = make_engine(entitlements_provider=provider)
    engine.upload_photo(png_bytes)

    first = engine.start_preview(STYLE)
    await provider.started.wait()
    second = engine.start_preview(STYLE, force=True)
    await asyncio.sleep(0)
    provider.release.set()

    assert await first == PreviewOutcome.ABORTED
    assert await second == PreviewOutcome.GENERATED
    assert engine.entitlements.state.status == EntitlementStatus.READY

    assert await engine.run_preview("neon-splash") == PreviewOutcome.GENERATED
    assert provider.calls == 1
    assert [r.style_id for r in client.requests] == [STYLE, "neon-splash"]


@pytest.mark.asyncio
async def test_abort_during_hydrate_does_not_block_later_previews(make_engine, png_bytes, snapshot):
    provider = FakeEntitlementsProvider(snapshot, hold=True)
    engine = make_engine(entitlements_provider=provider)
    engine.upload_photo(png_bytes)

    task = engine.start_preview(STYLE)
    await provider.started.wait()
    assert engine.abort_preview()
    assert await task == PreviewOutcome.ABORTED

    provider.release.set()

    assert await engine.run_preview(STYLE) == PreviewOutcome.GENERATED
    assert provider.calls == 1


@pytest.mark.asyncio
async def test_outside_cancellation_propagates(make_engine, png_bytes):
    client = FakeGenerationClient(hold=True)
    engine = make_engine(client=client)
    engine.upload_photo(png_bytes)

    task = engine.start_preview(STYLE)
    await client.started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(engine.registry) == 0


@pytest.mark.asyncio
async def test_smart_crop_change_changes_idempotency_key(engine, client):
    def crop(color):
        return SmartCrop(
            orientation=Orientation.SQUARE,
            region=CropRegion(x=0, y=0, width=6, height=6),
            image_width=8,
            image_height=6,
            generated_at=1,
            image=SourceImage.from_bytes(make_png(color, size=(6, 6))),
        )

    engine.set_smart_crop(crop((0, 0, 255)))
    await engine.run_preview(STYLE)
    engine.set_smart_crop(crop((0, 255, 0)))
    await engine.run_preview(STYLE, force=True)

    first, second = client.requests
    assert first.source_image.data != second.source_image.data
    assert first.idempotency_key != second.idempotency_key


@pytest.mark.asyncio
async def test_engine_without_identity_runs_as_anonymous(make_engine, png_bytes, client):
    engine = make_engine(identity=None)
    engine.upload_photo(png_bytes)

    assert await engine.run_preview(STYLE) == PreviewOutcome.GENERATED
    assert engine.session.identity.token.startswith("anon:")
    assert client.requests[0].anon_token == engine.session.identity.anon_token


@pytest.mark.asyncio
async def test_unidentifiable_caller_fails_before_loading(make_engine, png_bytes, client, listener):
    engine = make_engine(identity=CallerIdentity())
    engine.upload_photo(png_bytes)

    assert await engine.run_preview(STYLE) == PreviewOutcome.FAILED
    assert client.requests == []
    assert PreviewStatus.LOADING not in [state.status for sid, state in listener.states if sid == STYLE]
    assert PreviewStage.ANIMATING not in stages_for(listener, STYLE)
    assert engine.get_preview_state(STYLE).status == PreviewStatus.ERROR
