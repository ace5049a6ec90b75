"""
API Retry Handler with Exponential Backoff and Circuit Breaker

Wraps calls to the preview backend:
- Exponential backoff for transient failures (timeouts, transport errors, 5xx)
- Circuit breaker that fails fast while the backend is down
"""
import asyncio
import time
import logging
from typing import Optional, Callable, Any

import aiohttp

from preview_engine.config import settings
from preview_engine.errors import CircuitBreakerOpen

logger = logging.getLogger(__name__)


class TransientAPIError(Exception):
    """Server-side failure worth retrying (5xx)"""

    def __init__(self, status: int, body: str = ""):
        super().__init__(f"API error {status}")
        self.status = status
        self.body = body


RETRYABLE_ERRORS = (asyncio.TimeoutError, aiohttp.ClientError, TransientAPIError)


class APIRetryHandler:
    """
    Retry handler with exponential backoff and circuit breaker pattern.

    Circuit Breaker States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, all requests fail fast
    - HALF_OPEN: Testing if service recovered
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        circuit_failure_threshold: int = 5,
        circuit_timeout: float = 60.0
    ):
        """
        Initialize retry handler.

        Args:
            max_retries: Maximum number of attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay between retries
            circuit_failure_threshold: Failures needed to open circuit
            circuit_timeout: Time to wait before attempting recovery (seconds)
        """
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.circuit_failure_threshold = circuit_failure_threshold
        self.circuit_timeout = circuit_timeout

        self._failure_count = 0
        self._circuit_open = False
        self._circuit_open_time = 0.0

    @classmethod
    def from_settings(cls) -> "APIRetryHandler":
        return cls(
            max_retries=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            circuit_failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            circuit_timeout=settings.CIRCUIT_TIMEOUT_SECONDS,
        )

    @property
    def is_open(self) -> bool:
        return self._circuit_open

    def _check_circuit(self):
        if not self._circuit_open:
            return
        elapsed = time.time() - self._circuit_open_time
        if elapsed >= self.circuit_timeout:
            logger.info("Circuit breaker attempting recovery (HALF_OPEN)")
            self._circuit_open = False
        else:
            raise CircuitBreakerOpen(
                f"Preview service temporarily unavailable. "
                f"Retry in {self.circuit_timeout - elapsed:.1f}s"
            )

    def _record_success(self):
        if self._failure_count > 0:
            logger.info(f"API recovered - resetting failure count from {self._failure_count}")
        self._failure_count = 0
        self._circuit_open = False

    def _record_failure(self):
        self._failure_count += 1
        logger.warning(f"API failure count: {self._failure_count}/{self.circuit_failure_threshold}")

        if self._failure_count >= self.circuit_failure_threshold:
            self._circuit_open = True
            self._circuit_open_time = time.time()
            logger.error(
                f"Circuit breaker OPENED due to {self._failure_count} consecutive failures. "
                f"Will retry after {self.circuit_timeout}s"
            )

    async def execute_with_retry(
        self,
        api_call: Callable,
        *args,
        **kwargs
    ) -> Any:
        """
        Execute API call with retry logic and circuit breaker.

        Only RETRYABLE_ERRORS are retried; anything else propagates at once.
        Cancellation is never retried.

        Raises:
            CircuitBreakerOpen: If circuit breaker is open
            Exception: The last error once all attempts are exhausted
        """
        self._check_circuit()

        last_exception: Optional[BaseException] = None

        for attempt in range(self.max_retries):
            try:
                result = await api_call(*args, **kwargs)
                self._record_success()
                return result

            except RETRYABLE_ERRORS as e:
                last_exception = e
                logger.warning(
                    f"API error on attempt {attempt + 1}/{self.max_retries}: "
                    f"{type(e).__name__}: {e}"
                )

                if attempt < self.max_retries - 1:
                    delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                    logger.info(f"Retrying in {delay}s...")
                    await asyncio.sleep(delay)

        self._record_failure()

        logger.error(
            f"All {self.max_retries} retry attempts exhausted. "
            f"Last error: {type(last_exception).__name__}: {last_exception}"
        )

        raise last_exception
