"""Exception taxonomy for preview generation."""
from typing import Optional


class PreviewError(Exception):
    """Base class for preview engine errors"""
    code = "preview_error"


class NoSourceImage(PreviewError):
    """Raised when a preview is requested before a photo was uploaded"""
    code = "no_source_image"

    def __init__(self, message: str = "Upload a photo to generate a preview."):
        super().__init__(message)


class EntitlementUnavailable(PreviewError):
    """Raised when the preview allowance could not be loaded"""
    code = "entitlement_check_failed"


class QuotaExceeded(PreviewError):
    """Raised when the caller has no generation tokens left"""
    code = "quota_exceeded"

    def __init__(self, message: str = "You have reached the current generation limit.",
                 remaining_tokens: Optional[int] = 0):
        super().__init__(message)
        self.remaining_tokens = remaining_tokens


class TierRestricted(PreviewError):
    """Raised when a style needs a higher tier than the caller has"""
    code = "tier_restricted"

    def __init__(self, message: str, required_tier: Optional[str] = None):
        super().__init__(message)
        self.required_tier = required_tier


class GenerationFailed(PreviewError):
    """Raised for network, remote or timeout failures of the generation call"""
    code = "generation_failed"


class CircuitBreakerOpen(GenerationFailed):
    """Raised when circuit breaker is open"""
    pass


class Aborted(PreviewError):
    """Raised when an in-flight generation was superseded; never shown to users"""
    code = "aborted"
