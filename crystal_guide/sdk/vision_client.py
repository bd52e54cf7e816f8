"""
Stone-analysis client.

Sends a stone photo to an OpenAI-compatible vision endpoint and returns a
structured analysis. Calls are serialized through a request queue, retried
on transient failures and counted against daily/monthly usage limits.

Every public entry point returns an ``ApiResponse`` envelope rather than
raising, except the API-key and settings writes, which surface
``StorageError`` to the caller.
"""

import logging
import re
import time
from collections import deque
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, OpenAIError

from ..config.loader import AppConfig
from ..config.settings import SettingsStore
from ..core.analysis import (
    AnalysisRequest,
    AnalysisResult,
    build_messages,
    parse_analysis_response,
)
from ..core.errors import AnalysisParseError, ErrorCode, StorageError, TransportError
from ..core.request_queue import RequestQueue
from ..core.retry import ApiResponse, RetryPolicy, make_request_with_retry
from ..core.usage import UsageDecision, UsageTracker
from ..storage.kv_store import KeyValueStore
from ..storage.models import ClientSettings


class RedactingFilter(logging.Filter):
    """Logging filter that masks API keys and bearer tokens."""

    PATTERNS = [
        re.compile(r"(bearer\s+)([a-zA-Z0-9_\-\.]{8,})", re.IGNORECASE),
        re.compile(r'(api_key\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{8,})["\']?', re.IGNORECASE),
    ]
    KEY_PATTERN = re.compile(r"\bsk-[a-zA-Z0-9_\-]{4,}")

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._redact(record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                self._redact(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        return True

    def _redact(self, text: str) -> str:
        for pattern in self.PATTERNS:
            text = pattern.sub(r"\1[REDACTED]", text)
        return self.KEY_PATTERN.sub("[REDACTED]", text)


logger = logging.getLogger(__name__)
logger.addFilter(RedactingFilter())

# Number of recent attempt durations kept for the average response time
RESPONSE_TIME_WINDOW = 100


@dataclass(frozen=True)
class ApiStats:
    """Usage counters plus live queue and latency figures."""
    total_requests: int
    successful_requests: int
    failed_requests: int
    average_response_time_ms: float
    queue_length: int
    daily_count: int
    monthly_count: int


class StoneAnalysisClient:
    """Client for provider-backed stone identification.

    Construct through ``initialize()`` so the persisted API key is loaded
    before the client is used.
    """

    def __init__(
        self,
        store: KeyValueStore,
        usage: UsageTracker,
        settings: SettingsStore,
        config: Optional[AppConfig] = None,
        queue: Optional[RequestQueue] = None,
    ):
        self.config = config or AppConfig()
        self.store = store
        self.usage = usage
        self.settings = settings
        self.queue = queue or RequestQueue(pause=self.config.provider.rate_limit_delay)
        self._api_key = ""
        self._client: Optional[AsyncOpenAI] = None
        self._request_counter = 0
        self._response_times: deque = deque(maxlen=RESPONSE_TIME_WINDOW)

    # -- API key ----------------------------------------------------------

    async def load_api_key(self) -> bool:
        """Load the persisted API key into memory. Returns whether one exists."""
        stored = await self.store.get(self.config.storage.api_key_key)
        if isinstance(stored, str) and stored:
            self._api_key = stored
            return True
        return False

    async def is_api_key_set(self) -> bool:
        """Whether an API key is available, in memory or in storage."""
        if self._api_key:
            return True
        return await self.load_api_key()

    async def set_api_key(self, api_key: str) -> None:
        """Use ``api_key`` from now on and persist it.

        A failed save is logged and the key is kept in memory for this
        session.

        Raises:
            ValueError: If the key is empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")

        self._api_key = api_key.strip()
        await self._reset_client()
        try:
            await self.store.set(self.config.storage.api_key_key, self._api_key)
        except StorageError as e:
            logger.warning("API key could not be saved, keeping it in memory: %s", e)

    async def remove_api_key(self) -> None:
        """Forget the API key.

        Raises:
            StorageError: If the persisted key cannot be removed
        """
        self._api_key = ""
        await self._reset_client()
        await self.store.remove(self.config.storage.api_key_key)

    async def validate_api_key(self, api_key: Optional[str] = None) -> bool:
        """Check a key against the provider's model listing.

        Args:
            api_key: Key to check; defaults to the configured key

        Returns:
            True if the provider accepted the key
        """
        candidate = api_key or self._api_key
        if not candidate:
            return False

        client = AsyncOpenAI(
            api_key=candidate,
            base_url=self.config.provider.base_url,
            max_retries=0,
        )
        try:
            await client.models.list()
            return True
        except OpenAIError as e:
            logger.info("API key validation failed: %s", e)
            return False
        finally:
            await client.close()

    # -- limits and settings ----------------------------------------------

    async def can_make_request(self) -> UsageDecision:
        """Whether the usage limits allow another provider call."""
        try:
            return await self.usage.can_make_request()
        except StorageError as e:
            logger.error("Rate limiting check failed: %s", e)
            return UsageDecision(False, "Rate limiting check failed")

    async def get_settings(self) -> ClientSettings:
        return await self.settings.get_settings()

    async def update_settings(self, **changes: Any) -> ClientSettings:
        """Persist a partial settings update (raises ``StorageError``)."""
        return await self.settings.update_settings(**changes)

    async def reset_settings(self) -> None:
        await self.settings.reset_settings()

    # -- analysis ---------------------------------------------------------

    def _generate_request_id(self) -> str:
        self._request_counter += 1
        return f"req_{int(time.time() * 1000)}_{self._request_counter}"

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self.config.provider.base_url,
                max_retries=0,
            )
        return self._client

    async def _reset_client(self) -> None:
        if self._client is not None:
            client, self._client = self._client, None
            await client.close()

    async def _post_completion(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        """One chat-completion call; HTTP and network failures become ``TransportError``."""
        provider = self.config.provider
        try:
            completion = await self._get_client().chat.completions.create(
                model=provider.model,
                messages=messages,
                max_tokens=provider.max_tokens,
                temperature=provider.temperature,
            )
        except APIStatusError as e:
            raise TransportError(
                f"API request failed: {e.status_code}", status_code=e.status_code
            ) from e
        except APIConnectionError as e:
            raise TransportError(f"Network error: {e}") from e
        except OpenAIError as e:
            raise TransportError(f"Invalid API response: {e}") from e
        return completion.model_dump()

    async def _record_usage(self, success: bool) -> None:
        try:
            await self.usage.increment_usage(success)
        except StorageError as e:
            logger.error("Failed to track API usage: %s", e)

    async def _run_analysis(
        self,
        messages: List[Dict[str, Any]],
        request_id: str,
        policy: RetryPolicy,
        track_usage: bool,
    ) -> ApiResponse[AnalysisResult]:
        response = await make_request_with_retry(
            lambda: self._post_completion(messages),
            request_id,
            policy,
            on_attempt=self._response_times.append,
        )

        if response.success:
            try:
                result = ApiResponse.ok(parse_analysis_response(response.data), request_id)
            except AnalysisParseError as e:
                logger.warning("%s: unusable analysis reply (%s)", request_id, e.message)
                result = ApiResponse.failure(
                    "Failed to parse analysis response", ErrorCode.PARSE_ERROR, request_id
                )
        else:
            result = response

        if track_usage:
            await self._record_usage(result.success)

        if result.success:
            logger.info("%s identified %s (%.0f%%)", request_id,
                        result.data.stone_name, result.data.confidence)
        return result

    async def analyze_stone(self, request: AnalysisRequest) -> ApiResponse[AnalysisResult]:
        """Identify the stone in ``request``'s image.

        Fails fast, without a network call or a usage increment, when no API
        key is configured or the usage limits are reached. Otherwise the call
        is queued, retried on transient failures and counted exactly once.

        Args:
            request: Image and analysis type

        Returns:
            ApiResponse carrying an AnalysisResult on success
        """
        if not await self.is_api_key_set():
            return ApiResponse.failure(
                "API key not configured", ErrorCode.NO_API_KEY, self._generate_request_id()
            )

        decision = await self.can_make_request()
        if not decision.allowed:
            return ApiResponse.failure(
                decision.reason or "Rate limit exceeded",
                ErrorCode.RATE_LIMIT_EXCEEDED,
                self._generate_request_id(),
            )

        request_id = self._generate_request_id()
        settings = await self.settings.get_settings()
        policy = RetryPolicy.from_settings(settings, self.config.provider.retry_delay)
        messages = build_messages(request)

        logger.info("%s queued: %s analysis of %s image", request_id,
                    request.analysis_type.value, request.image_format.value)
        return await self.queue.enqueue(
            lambda: self._run_analysis(
                messages, request_id, policy, settings.enable_usage_tracking
            )
        )

    analyze = analyze_stone

    # -- statistics -------------------------------------------------------

    async def get_api_stats(self) -> ApiStats:
        """Usage counters with queue length and average response time."""
        try:
            usage = await self.usage.get_usage()
            counts = (usage.total_requests, usage.successful_requests,
                      usage.failed_requests, usage.daily_count, usage.monthly_count)
        except StorageError as e:
            logger.error("Failed to get usage data: %s", e)
            counts = (0, 0, 0, 0, 0)

        times = list(self._response_times)
        average = sum(times) / len(times) if times else 0.0
        total, successful, failed, daily, monthly = counts
        return ApiStats(
            total_requests=total,
            successful_requests=successful,
            failed_requests=failed,
            average_response_time_ms=round(average, 1),
            queue_length=self.queue.pending,
            daily_count=daily,
            monthly_count=monthly,
        )

    async def clear_stats(self) -> None:
        """Reset the monthly counter and the response-time window."""
        self._response_times.clear()
        try:
            await self.usage.reset_monthly_usage()
        except StorageError as e:
            logger.error("Failed to reset monthly usage: %s", e)

    async def aclose(self) -> None:
        """Stop the queue worker and close the HTTP client."""
        await self.queue.aclose()
        await self._reset_client()


async def initialize(
    config: Optional[AppConfig] = None,
    today: Callable[[], date] = date.today,
) -> StoneAnalysisClient:
    """Build a ready-to-use client: storage, tracker, settings and API key.

    Callers await this once at start-up and pass the client to whatever
    needs it.

    Raises:
        StorageError: If the storage cannot be initialized
    """
    config = config or AppConfig()
    store = KeyValueStore(config.storage.db_path)
    await store.initialize_schema()

    client = StoneAnalysisClient(
        store=store,
        usage=UsageTracker(store, config.storage.usage_key, config.limits, today=today),
        settings=SettingsStore(store, config.storage.settings_key),
        config=config,
    )
    if await client.load_api_key():
        logger.debug("API key loaded from storage")
    return client
