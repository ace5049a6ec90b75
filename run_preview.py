import argparse
import asyncio
import logging
import sys
from pathlib import Path

from preview_engine import CallerIdentity, Orientation, PreviewEngine, StyleOption
from preview_engine.config import settings
from preview_engine.models import PreviewOutcome, PreviewStage, PreviewState, Tier
from preview_engine.services.preview_events import PreviewEventListener

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout
)
logger = logging.getLogger(__name__)

DEFAULT_STYLES = [
    StyleOption(id="original-image", name="Original Image"),
    StyleOption(id="oil-painting", name="Oil Painting"),
    StyleOption(id="watercolor-dreams", name="Watercolor Dreams"),
    StyleOption(id="neon-splash", name="Neon Splash"),
    StyleOption(id="gallery-acrylic", name="Gallery Acrylic", is_premium=True, required_tier=Tier.CREATOR),
]

SUCCESS_OUTCOMES = {PreviewOutcome.GENERATED, PreviewOutcome.CACHE_HIT, PreviewOutcome.ORIGINAL}


class ConsoleListener(PreviewEventListener):
    """Prints stage and state changes to the log"""

    def on_stage(self, style_id, stage: PreviewStage, message):
        logger.info(f"[{style_id}] stage={stage.value} {message or ''}")

    def on_preview_state(self, style_id, state: PreviewState):
        url = state.data.preview_url[:60] + "…" if state.data else None
        logger.info(f"[{style_id}] state={state.status.value} url={url} error={state.error}")

    def on_upgrade_prompt(self, gate):
        logger.warning(f"Upgrade prompt: {gate.message} ({gate.cta_text})")

    def on_auth_required(self, style_id, options):
        logger.warning(f"[{style_id}] Sign-in required before generating")


def parse_args():
    parser = argparse.ArgumentParser(description="Generate a style preview for a photo")
    parser.add_argument("photo", type=Path, help="Path to the source photo")
    parser.add_argument("--style", default="oil-painting", help="Style id to preview")
    parser.add_argument(
        "--orientation",
        choices=[o.value for o in Orientation],
        default=Orientation.SQUARE.value,
    )
    parser.add_argument("--batch", action="store_true", help="Pre-warm the default batch afterwards")
    return parser.parse_args()


async def main():
    """Run one preview session"""
    args = parse_args()

    logger.info("=" * 60)
    logger.info("Starting preview session...")
    logger.info(f"Mode: {settings.PREVIEW_MODE} | Log level: {settings.LOG_LEVEL}")
    logger.info("=" * 60)

    engine = PreviewEngine(
        DEFAULT_STYLES,
        identity=CallerIdentity.anonymous(),
        listener=ConsoleListener(),
        orientation=Orientation(args.orientation),
    )

    engine.upload_photo(args.photo.read_bytes())
    logger.info(f"✓ Photo loaded: {args.photo}")

    outcome = await engine.run_preview(args.style)
    logger.info(f"Preview outcome: {outcome.value}")

    if args.batch:
        outcomes = await engine.generate_batch()
        for style_id, style_outcome in outcomes.items():
            logger.info(f"Batch | {style_id} -> {style_outcome.value}")

    logger.info(f"Cache diagnostics: {engine.get_cache_diagnostics().to_dict()}")
    return 0 if outcome in SUCCESS_OUTCOMES else 1


if __name__ == "__main__":
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("Preview session stopped by user")
    except Exception as e:
        logger.critical(f"Critical error: {e}", exc_info=True)
        sys.exit(1)
