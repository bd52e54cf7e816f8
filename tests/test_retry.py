"""
Tests for the retry engine and response envelope.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from crystal_guide.core.errors import ErrorCode, TransportError
from crystal_guide.core.retry import ApiResponse, RetryPolicy, make_request_with_retry
from crystal_guide.storage.models import ClientSettings


def no_wait_policy(**overrides) -> RetryPolicy:
    values = {"max_attempts": 3, "retry_delay": 0, "timeout": 5}
    values.update(overrides)
    return RetryPolicy(**values)


class TestRetryPolicy:
    """Test policy construction."""

    def test_from_default_settings(self):
        policy = RetryPolicy.from_settings(ClientSettings(), retry_delay=1.0)

        assert policy.max_attempts == 3
        assert policy.retry_delay == 1.0
        assert policy.timeout == 30.0

    def test_auto_retry_disabled_means_one_attempt(self):
        settings = ClientSettings(auto_retry=False, max_retries=5)

        assert RetryPolicy.from_settings(settings, retry_delay=1.0).max_attempts == 1

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(timeout=0)


@pytest.mark.asyncio
class TestMakeRequestWithRetry:
    """Test attempt counting, backoff and failure normalization."""

    async def test_success_first_attempt(self):
        call = AsyncMock(return_value={"ok": True})

        response = await make_request_with_retry(call, "req_1", no_wait_policy())

        assert response.success is True
        assert response.data == {"ok": True}
        assert response.request_id == "req_1"
        assert call.await_count == 1

    async def test_always_failing_makes_exactly_max_attempts(self):
        """max_attempts=3 with a failing transport means 3 calls, one failure."""
        call = AsyncMock(side_effect=TransportError("API request failed: 503", status_code=503))

        response = await make_request_with_retry(call, "req_2", no_wait_policy(max_attempts=3))

        assert call.await_count == 3
        assert response.success is False
        assert response.error == "API request failed: 503"
        assert response.error_code is ErrorCode.NETWORK_ERROR
        assert response.request_id == "req_2"

    async def test_recovers_after_transient_failure(self):
        call = AsyncMock(side_effect=[TransportError("Network error: reset"), {"ok": 1}])

        response = await make_request_with_retry(call, "req_3", no_wait_policy())

        assert response.success is True
        assert call.await_count == 2

    async def test_linear_backoff(self):
        """Attempt n waits retry_delay * n before the next attempt."""
        call = AsyncMock(side_effect=TransportError("down"))
        sleep = AsyncMock()

        await make_request_with_retry(
            call, "req_4", no_wait_policy(max_attempts=4, retry_delay=1.0), sleep=sleep
        )

        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0, 3.0]

    async def test_single_attempt_policy_does_not_sleep(self):
        call = AsyncMock(side_effect=TransportError("down"))
        sleep = AsyncMock()

        response = await make_request_with_retry(
            call, "req_5", no_wait_policy(max_attempts=1, retry_delay=1.0), sleep=sleep
        )

        assert response.success is False
        assert call.await_count == 1
        sleep.assert_not_awaited()

    async def test_timeout_is_retried_and_reported(self):
        """A hanging call is cancelled after the timeout and retried."""
        attempts = 0

        async def hang():
            nonlocal attempts
            attempts += 1
            await asyncio.sleep(10)

        response = await make_request_with_retry(
            hang, "req_6", no_wait_policy(max_attempts=2, timeout=0.01)
        )

        assert attempts == 2
        assert response.success is False
        assert response.error_code is ErrorCode.TIMEOUT

    async def test_unexpected_errors_propagate(self):
        """Programming errors are not masked as transport failures."""
        call = AsyncMock(side_effect=KeyError("boom"))

        with pytest.raises(KeyError):
            await make_request_with_retry(call, "req_7", no_wait_policy())
        assert call.await_count == 1

    async def test_reports_attempt_durations(self):
        durations = []
        call = AsyncMock(side_effect=[TransportError("down"), "done"])

        await make_request_with_retry(call, "req_8", no_wait_policy(),
                                      on_attempt=durations.append)

        assert len(durations) == 2
        assert all(d >= 0 for d in durations)


class TestApiResponse:
    """Test the response envelope."""

    def test_failure_to_dict(self):
        response = ApiResponse.failure("API key not configured", ErrorCode.NO_API_KEY, "req_9")
        data = response.to_dict()

        assert data["success"] is False
        assert data["error"] == "API key not configured"
        assert data["errorCode"] == "no_api_key"
        assert data["requestId"] == "req_9"
        assert "data" not in data

    def test_ok_to_dict(self):
        data = ApiResponse.ok({"stoneName": "Quartz"}, "req_10").to_dict()

        assert data["success"] is True
        assert data["data"] == {"stoneName": "Quartz"}
        assert "error" not in data
