"""
Retry engine for provider calls.

Wraps a single provider call with a per-attempt timeout and linear backoff,
and normalizes the outcome into an ``ApiResponse`` envelope.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, TypeVar

from ..storage.models import ClientSettings
from .errors import ErrorCode, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ApiResponse(Generic[T]):
    """Success/failure envelope returned by every public client call."""
    success: bool
    request_id: str
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def ok(cls, data: T, request_id: str) -> "ApiResponse[T]":
        return cls(success=True, data=data, request_id=request_id)

    @classmethod
    def failure(cls, error: str, code: ErrorCode, request_id: str) -> "ApiResponse[T]":
        return cls(success=False, error=error, error_code=code, request_id=request_id)

    def to_dict(self) -> Dict[str, Any]:
        data = self.data.to_dict() if hasattr(self.data, "to_dict") else self.data
        result = {
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
            "requestId": self.request_id,
        }
        if self.success:
            result["data"] = data
        else:
            result["error"] = self.error
            result["errorCode"] = self.error_code.value if self.error_code else None
        return result


@dataclass(frozen=True)
class RetryPolicy:
    """How many times and how patiently to attempt one call."""
    max_attempts: int = 3
    retry_delay: float = 1.0  # seconds; attempt n waits retry_delay * n
    timeout: float = 30.0     # seconds per attempt

    def __post_init__(self):
        """Validate policy values."""
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.retry_delay < 0:
            raise ValueError("retry_delay must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")

    @classmethod
    def from_settings(cls, settings: ClientSettings, retry_delay: float) -> "RetryPolicy":
        """Derive the policy from persisted client settings."""
        return cls(
            max_attempts=settings.max_retries if settings.auto_retry else 1,
            retry_delay=retry_delay,
            timeout=settings.timeout_ms / 1000,
        )


async def make_request_with_retry(
    call: Callable[[], Awaitable[T]],
    request_id: str,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_attempt: Optional[Callable[[float], None]] = None,
) -> ApiResponse[T]:
    """Run ``call`` until it succeeds or ``policy.max_attempts`` is reached.

    Transport failures (``TransportError``) and timeouts are transient and
    retried after ``retry_delay * attempt`` seconds. A timed-out attempt is
    cancelled. Any other exception is a programming error and propagates.

    Args:
        call: Zero-argument coroutine factory performing one attempt
        request_id: Correlation id shared by every attempt
        policy: Attempt count, backoff base and per-attempt timeout
        sleep: Coroutine used for backoff waits
        on_attempt: Optional callback receiving each attempt's duration in ms

    Returns:
        ApiResponse with the call's result, or the last failure
    """
    attempt = 1
    while True:
        started = time.perf_counter()
        try:
            data = await asyncio.wait_for(call(), timeout=policy.timeout)
            response = ApiResponse.ok(data, request_id)
        except asyncio.TimeoutError:
            response = ApiResponse.failure(
                f"Request timed out after {policy.timeout:g}s",
                ErrorCode.TIMEOUT,
                request_id,
            )
        except TransportError as e:
            response = ApiResponse.failure(e.message, ErrorCode.NETWORK_ERROR, request_id)

        elapsed_ms = (time.perf_counter() - started) * 1000
        if on_attempt is not None:
            on_attempt(elapsed_ms)

        if response.success:
            logger.debug("%s succeeded on attempt %d in %.0fms",
                         request_id, attempt, elapsed_ms)
            return response

        if attempt >= policy.max_attempts:
            logger.warning("%s failed after %d attempt(s): %s",
                           request_id, attempt, response.error)
            return response

        delay = policy.retry_delay * attempt
        logger.info("%s attempt %d/%d failed (%s), retrying in %.1fs",
                    request_id, attempt, policy.max_attempts, response.error, delay)
        await sleep(delay)
        attempt += 1
