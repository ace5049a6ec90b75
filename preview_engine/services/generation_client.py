"""
Preview Generation Service
Client side of the remote style-transfer backend.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Literal, Optional, Protocol, Tuple, Union

import aiohttp
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from preview_engine.config import settings
from preview_engine.errors import (
    CircuitBreakerOpen,
    GenerationFailed,
    PreviewError,
    QuotaExceeded,
)
from preview_engine.models import EntitlementUpdate, SourceImage
from preview_engine.utils.api_retry import RETRYABLE_ERRORS, APIRetryHandler, TransientAPIError

logger = logging.getLogger(__name__)

QUOTA_ERROR_CODES = {"entitlement_exceeded", "quota_exceeded"}
QUOTA_STATUSES = {402, 429}


class GenerationStage(str, Enum):
    GENERATING = "generating"
    POLLING = "polling"
    WATERMARKING = "watermarking"


class StageObserver(Protocol):
    def on_stage(self, stage: GenerationStage) -> None:
        ...


@dataclass(frozen=True)
class GenerationRequest:
    source_image: SourceImage
    style_id: str
    style_name: str
    aspect_ratio: str
    idempotency_key: str
    access_token: Optional[str] = None
    anon_token: Optional[str] = None
    source_storage_path: Optional[str] = None
    source_display_url: Optional[str] = None
    crop_config: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "imageUrl": self.source_image.data_uri,
            "style": self.style_name,
            "styleId": self.style_id,
            "aspectRatio": self.aspect_ratio,
            "idempotencyKey": self.idempotency_key,
            "sourceStoragePath": self.source_storage_path,
            "sourceDisplayUrl": self.source_display_url,
            "cropConfig": self.crop_config,
        }
        if self.anon_token:
            payload["anonToken"] = self.anon_token
        return payload

    def headers(self) -> Dict[str, str]:
        headers = dict(settings.api_headers)
        headers["Idempotency-Key"] = self.idempotency_key
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers


class GenerationSuccess(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: Literal["success"] = "success"
    preview_url: str = Field(alias="previewUrl", min_length=1)
    requires_watermark: bool = Field(True, alias="requiresWatermark")
    remaining_tokens: Optional[int] = Field(None, alias="remainingTokens")
    tier: Optional[str] = None
    priority: Optional[str] = None
    soft_remaining: Optional[int] = Field(None, alias="softRemaining")
    storage_url: Optional[str] = Field(None, alias="storageUrl")
    storage_path: Optional[str] = Field(None, alias="storagePath")
    source_storage_path: Optional[str] = Field(None, alias="sourceStoragePath")
    source_display_url: Optional[str] = Field(None, alias="sourceDisplayUrl")
    preview_log_id: Optional[str] = Field(None, alias="previewLogId")
    crop_config: Optional[Dict[str, Any]] = Field(None, alias="cropConfig")

    def entitlement_update(self) -> EntitlementUpdate:
        return EntitlementUpdate(
            remaining_tokens=self.remaining_tokens,
            requires_watermark=self.requires_watermark,
            tier=self.tier,
            priority=self.priority,
            soft_remaining=self.soft_remaining,
        )


class FailureCode(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    GENERATION_FAILED = "generation_failed"


class GenerationFailure(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: Literal["failure"] = "failure"
    code: FailureCode = FailureCode.GENERATION_FAILED
    message: str = "Preview failed"
    remaining_tokens: Optional[int] = Field(None, alias="remainingTokens")

    def to_exception(self) -> PreviewError:
        if self.code == FailureCode.QUOTA_EXCEEDED:
            return QuotaExceeded(self.message, remaining_tokens=self.remaining_tokens)
        return GenerationFailed(self.message)


GenerationResult = Union[GenerationSuccess, GenerationFailure]


class GenerationClient(Protocol):
    async def generate(self, request: GenerationRequest,
                       observer: Optional[StageObserver] = None) -> GenerationResult:
        ...


def _notify(observer: Optional[StageObserver], stage: GenerationStage) -> None:
    if observer is not None:
        observer.on_stage(stage)


def _error_message(payload: Dict[str, Any], fallback: str) -> str:
    for key in ("message", "error"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict) and value.get("message"):
            return str(value["message"])
    return fallback


def parse_generation_response(status: int, payload: Any) -> GenerationResult:
    """
    Turn a raw backend response into a tagged success or failure.

    Quota errors are recognised by status (402/429) or by the error code in
    the body, and keep the remaining token count the backend reported.
    """
    if not isinstance(payload, dict):
        payload = {}

    error_code = payload.get("error") if isinstance(payload.get("error"), str) else payload.get("code")
    remaining = payload.get("remainingTokens", payload.get("remaining_tokens"))

    if status in QUOTA_STATUSES or (isinstance(error_code, str) and error_code.lower() in QUOTA_ERROR_CODES):
        return GenerationFailure(
            code=FailureCode.QUOTA_EXCEEDED,
            message=_error_message(payload, "You have reached the current generation limit."),
            remaining_tokens=remaining if isinstance(remaining, int) else None,
        )

    if status >= 400:
        return GenerationFailure(message=_error_message(payload, f"Preview service error ({status})"))

    if payload.get("status") == "failed":
        return GenerationFailure(message=_error_message(payload, "Preview generation failed"))

    try:
        return GenerationSuccess.model_validate(payload)
    except ValidationError as e:
        logger.error(f"Malformed preview response: {e}")
        return GenerationFailure(message="Malformed preview response")


class HttpGenerationClient:
    """Calls the preview backend over HTTP and polls long-running jobs"""

    def __init__(
        self,
        url: Optional[str] = None,
        retry: Optional[APIRetryHandler] = None,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        max_polls: Optional[int] = None,
    ):
        self.url = (url or settings.GENERATION_API_URL).rstrip("/")
        self.retry = retry or APIRetryHandler.from_settings()
        self.timeout = timeout if timeout is not None else settings.GENERATION_TIMEOUT_SECONDS
        self.poll_interval = poll_interval if poll_interval is not None else settings.GENERATION_POLL_INTERVAL_SECONDS
        self.max_polls = max_polls if max_polls is not None else settings.GENERATION_MAX_POLLS

    async def generate(self, request: GenerationRequest,
                       observer: Optional[StageObserver] = None) -> GenerationResult:
        _notify(observer, GenerationStage.GENERATING)
        logger.info(
            f"Style {request.style_id} | Requesting preview | "
            f"aspect_ratio={request.aspect_ratio} key={request.idempotency_key[:16]}…"
        )

        try:
            result = await asyncio.wait_for(self._generate(request, observer), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Style {request.style_id} | Preview generation timed out after {self.timeout}s")
            return GenerationFailure(message="Preview generation timed out")
        except CircuitBreakerOpen as e:
            return GenerationFailure(message=str(e))
        except RETRYABLE_ERRORS as e:
            logger.error(f"Style {request.style_id} | Preview service unreachable: {type(e).__name__}: {e}")
            return GenerationFailure(message="Preview service is unreachable. Please try again.")

        if isinstance(result, GenerationSuccess) and result.requires_watermark:
            _notify(observer, GenerationStage.WATERMARKING)
        return result

    async def _generate(self, request: GenerationRequest,
                        observer: Optional[StageObserver]) -> GenerationResult:
        async with aiohttp.ClientSession() as session:
            status, payload = await self.retry.execute_with_retry(self._post, session, request)

            if status == 202:
                request_id = payload.get("requestId")
                if not request_id:
                    return GenerationFailure(message="Preview job was accepted without a request id")
                _notify(observer, GenerationStage.POLLING)
                status, payload = await self._poll(session, request, request_id)

        return parse_generation_response(status, payload)

    async def _post(self, session: aiohttp.ClientSession,
                    request: GenerationRequest) -> Tuple[int, Dict[str, Any]]:
        async with session.post(self.url, json=request.to_payload(), headers=request.headers()) as response:
            return await self._read(response)

    async def _poll(self, session: aiohttp.ClientSession, request: GenerationRequest,
                    request_id: str) -> Tuple[int, Dict[str, Any]]:
        for attempt in range(self.max_polls):
            await asyncio.sleep(self.poll_interval)
            status, payload = await self.retry.execute_with_retry(self._get_status, session, request, request_id)
            job_status = payload.get("status")
            logger.debug(f"Style {request.style_id} | Poll {attempt + 1}/{self.max_polls} | status={job_status}")

            if status != 200 or job_status in ("succeeded", "failed"):
                return status, payload

        return 504, {"error": "Preview generation timed out"}

    async def _get_status(self, session: aiohttp.ClientSession, request: GenerationRequest,
                          request_id: str) -> Tuple[int, Dict[str, Any]]:
        async with session.get(
            f"{self.url}/status",
            params={"requestId": request_id},
            headers=request.headers()
        ) as response:
            return await self._read(response)

    @staticmethod
    async def _read(response: aiohttp.ClientResponse) -> Tuple[int, Dict[str, Any]]:
        if response.status >= 500:
            raise TransientAPIError(response.status, await response.text())
        try:
            payload = await response.json(content_type=None)
        except ValueError:
            error_text = await response.text()
            logger.error(f"Non-JSON response from preview service: {response.status} - {error_text[:200]}")
            payload = {}
        return response.status, payload if isinstance(payload, dict) else {}


class StubGenerationClient:
    """
    Offline stand-in for the backend: walks through the stages with short
    delays and returns the source image as the preview
    """

    def __init__(self, generating_delay: Optional[float] = None,
                 polling_delay: Optional[float] = None,
                 watermark_delay: Optional[float] = None):
        self.delays = (
            settings.STUB_GENERATING_DELAY if generating_delay is None else generating_delay,
            settings.STUB_POLLING_DELAY if polling_delay is None else polling_delay,
            settings.STUB_WATERMARK_DELAY if watermark_delay is None else watermark_delay,
        )

    async def generate(self, request: GenerationRequest,
                       observer: Optional[StageObserver] = None) -> GenerationResult:
        stages = (GenerationStage.GENERATING, GenerationStage.POLLING, GenerationStage.WATERMARKING)
        for stage, delay in zip(stages, self.delays):
            logger.debug(f"Style {request.style_id} | Stub stage {stage.value}")
            _notify(observer, stage)
            await asyncio.sleep(delay)

        url = request.source_image.data_uri
        return GenerationSuccess(
            preview_url=url,
            requires_watermark=True,
            tier="free",
            priority="normal",
            storage_url=url,
            source_display_url=url,
        )


def create_generation_client() -> GenerationClient:
    if settings.is_stub_mode:
        logger.info("Preview generation running in stub mode")
        return StubGenerationClient()
    return HttpGenerationClient()
