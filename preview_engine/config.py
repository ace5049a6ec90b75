from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Logging
    LOG_LEVEL: str = "INFO"

    # Remote generation
    PREVIEW_MODE: str = "live"  # "live" or "stub"
    GENERATION_API_URL: str = "http://localhost:54321/functions/v1/generate-style-preview"
    ENTITLEMENTS_API_URL: str = "http://localhost:54321/functions/v1/get-entitlements"
    API_KEY: Optional[str] = None
    GENERATION_TIMEOUT_SECONDS: float = 120.0
    GENERATION_POLL_INTERVAL_SECONDS: float = 1.5
    GENERATION_MAX_POLLS: int = 40

    # Retry / circuit breaker for remote calls
    RETRY_MAX_ATTEMPTS: int = 2
    RETRY_BASE_DELAY: float = 2.0
    RETRY_MAX_DELAY: float = 30.0
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_TIMEOUT_SECONDS: float = 60.0

    # Stub mode stage delays (seconds)
    STUB_GENERATING_DELAY: float = 0.7
    STUB_POLLING_DELAY: float = 0.6
    STUB_WATERMARK_DELAY: float = 0.5

    # Preview cache
    PREVIEW_CACHE_LIMIT: int = 50

    # Orchestrator timings
    ERROR_COOLDOWN_SECONDS: float = 1.6
    READY_RESET_SECONDS: float = 0.4
    SIGNED_URL_MIN_TTL_SECONDS: float = 5.0

    # Batch pre-warming
    BATCH_DEFAULT_SIZE: int = 3

    # Styles
    ORIGINAL_IMAGE_STYLE_ID: str = "original-image"
    DEFAULT_PREMIUM_TIER: str = "creator"

    # Anonymous visitors must sign in before a network preview is generated
    REQUIRE_AUTH_FOR_PREVIEW: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def is_stub_mode(self) -> bool:
        return self.PREVIEW_MODE.lower() == "stub"

    @property
    def api_headers(self) -> dict:
        """Headers shared by every call to the preview backend"""
        headers = {"Content-Type": "application/json"}
        if self.API_KEY:
            headers["apikey"] = self.API_KEY
        return headers


settings = Settings()
