"""
Idempotency keys for remote preview generation.

Two submissions with the same style, orientation, source image bytes and
caller collapse to the same key, so retries and duplicate clicks are merged
by the backend instead of burning another generation token.
"""
import hashlib
import json

from preview_engine.models import CallerIdentity, Orientation

KEY_PREFIX = "pv1_"


class IdempotencyKeyBuilder:
    """Builds opaque idempotency tokens; the local cache never uses them"""

    def __init__(self, prefix: str = KEY_PREFIX):
        self.prefix = prefix

    def build(
        self,
        style_id: str,
        orientation: Orientation,
        image_content_hash: str,
        caller_identity: CallerIdentity,
    ) -> str:
        if not style_id:
            raise ValueError("style_id is required for an idempotency key")
        if not image_content_hash:
            raise ValueError("image_content_hash is required for an idempotency key")

        # Labelled fields + sorted keys: the key does not depend on argument order
        canonical = json.dumps(
            {
                "caller": caller_identity.token,
                "image": image_content_hash,
                "orientation": Orientation(orientation).value,
                "style": style_id,
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return self.prefix + hashlib.sha256(canonical.encode("utf-8")).hexdigest()
