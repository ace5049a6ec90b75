"""
Preview Session
Per-visitor inputs to preview generation: the photo, its crops, the chosen
orientation and style, and who the visitor is.
"""
import logging
import time
from typing import Callable, Dict, List, Optional

from preview_engine.config import settings
from preview_engine.models import CallerIdentity, Orientation, SmartCrop, SourceImage

logger = logging.getLogger(__name__)


class PreviewSession:
    def __init__(
        self,
        identity: Optional[CallerIdentity] = None,
        orientation: Orientation = Orientation.SQUARE,
    ):
        self.identity = identity or CallerIdentity()
        self.orientation = orientation
        self.selected_style_id: Optional[str] = None
        self.orientation_preview_pending = False
        self.first_preview_completed = False

        self.uploaded_image: Optional[SourceImage] = None
        self.cropped_image: Optional[SourceImage] = None
        self.original_image: Optional[SourceImage] = None
        self.smart_crops: Dict[Orientation, SmartCrop] = {}

        # Uploaded original in backend storage
        self.original_storage_path: Optional[str] = None
        self.original_public_url: Optional[str] = None
        self.original_signed_url: Optional[str] = None
        self.original_signed_url_expires_at: Optional[float] = None

        self._upload_listeners: List[Callable[[], None]] = []

    # ---- image pipeline inputs -------------------------------------------

    def on_new_upload(self, callback: Callable[[], None]) -> None:
        """Register a callback run whenever a new photo replaces the old one"""
        self._upload_listeners.append(callback)

    def set_uploaded_image(self, image: Optional[SourceImage]) -> None:
        self.uploaded_image = image
        self.original_image = image
        self.cropped_image = None
        self.smart_crops = {}
        self.original_storage_path = None
        self.original_public_url = None
        self.original_signed_url = None
        self.original_signed_url_expires_at = None
        self.orientation_preview_pending = False
        logger.info(f"New source image set ({len(image.data) if image else 0} bytes)")
        for callback in self._upload_listeners:
            callback()

    def set_cropped_image(self, image: Optional[SourceImage]) -> None:
        self.cropped_image = image

    def set_smart_crop(self, crop: SmartCrop) -> None:
        self.smart_crops[crop.orientation] = crop

    def set_original_storage(
        self,
        storage_path: Optional[str],
        public_url: Optional[str] = None,
        signed_url: Optional[str] = None,
        signed_url_expires_at: Optional[float] = None,
    ) -> None:
        self.original_storage_path = storage_path
        self.original_public_url = public_url
        self.original_signed_url = signed_url
        self.original_signed_url_expires_at = signed_url_expires_at

    # ---- derived values ---------------------------------------------------

    @property
    def display_source(self) -> Optional[SourceImage]:
        """Image shown for the unmodified-photo style"""
        return self.cropped_image or self.uploaded_image

    def source_for(self, orientation: Orientation) -> Optional[SourceImage]:
        """Image sent for generation under ``orientation``"""
        if self.cropped_image:
            return self.cropped_image
        crop = self.smart_crops.get(orientation)
        if crop and crop.image:
            return crop.image
        return self.uploaded_image or self.original_image

    def crop_config_for(self, orientation: Orientation) -> Optional[dict]:
        crop = self.smart_crops.get(orientation)
        return crop.to_crop_config() if crop else None

    def source_display_url(self, now: Optional[float] = None) -> Optional[str]:
        """Signed URL while it has a few seconds left, otherwise the public one"""
        now = time.time() if now is None else now
        expires = self.original_signed_url_expires_at
        if self.original_signed_url and expires and expires > now + settings.SIGNED_URL_MIN_TTL_SECONDS:
            return self.original_signed_url
        return self.original_public_url

    def image_digest(self, orientation: Optional[Orientation] = None) -> Optional[str]:
        """Content hash of the image sent for ``orientation`` (the session orientation by default)"""
        source = self.source_for(orientation or self.orientation)
        return source.digest if source else None
