"""
Style preview engine
Generates, caches and gates watermark-aware style previews of a user photo.
"""
from .engine import PreviewEngine
from .models import CallerIdentity, Orientation, PreviewOutcome, PreviewStage, StyleOption

__all__ = [
    "PreviewEngine",
    "CallerIdentity",
    "Orientation",
    "PreviewOutcome",
    "PreviewStage",
    "StyleOption",
]
