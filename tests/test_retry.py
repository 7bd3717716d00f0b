"""Tests for the overload retry policy."""

import logging
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from session_processor.utils.errors import UpstreamError
from session_processor.utils.retry import (
    MAX_DELAY_SECONDS,
    delay_for,
    retry_with_backoff,
    should_retry,
)


def _overloaded() -> UpstreamError:
    return UpstreamError("model overloaded", status=503, code="UNAVAILABLE")


class TestShouldRetry:
    """Tests for should_retry() classification."""

    def test_status_503_is_retryable(self) -> None:
        assert should_retry(UpstreamError("x", status=503))

    def test_unavailable_code_is_retryable(self) -> None:
        assert should_retry(UpstreamError("x", status=500, code="UNAVAILABLE"))

    def test_httpx_503_is_retryable(self) -> None:
        request = httpx.Request("POST", "https://example.com")
        response = httpx.Response(503, request=request)
        error = httpx.HTTPStatusError("busy", request=request, response=response)
        assert should_retry(error)

    def test_other_status_is_not_retryable(self) -> None:
        assert not should_retry(UpstreamError("bad request", status=400))

    def test_plain_exception_is_not_retryable(self) -> None:
        assert not should_retry(ValueError("boom"))


class TestDelayFor:
    """Tests for delay_for() backoff computation."""

    def test_first_retry_uses_base_delay_plus_jitter(self) -> None:
        delay = delay_for(_overloaded(), 1)
        assert 1.5 <= delay < 1.8

    def test_second_retry_doubles(self) -> None:
        delay = delay_for(_overloaded(), 2)
        assert 3.0 <= delay < 3.3

    def test_delay_is_capped(self) -> None:
        assert delay_for(_overloaded(), 10) == MAX_DELAY_SECONDS

    def test_non_retryable_error_is_raised(self) -> None:
        error = UpstreamError("invalid", status=400)
        with pytest.raises(UpstreamError, match="invalid"):
            delay_for(error, 1)


class TestRetryWithBackoff:
    """Tests for the retry decorator."""

    async def test_succeeds_on_first_call(self) -> None:
        call_count = 0

        @retry_with_backoff()
        async def succeed_immediately() -> str:
            nonlocal call_count
            call_count += 1
            return "ok"

        assert await succeed_immediately() == "ok"
        assert call_count == 1

    async def test_two_overloads_then_success(self) -> None:
        """Two 503s are retried with two delays, the third call succeeds."""
        call_count = 0

        @retry_with_backoff()
        async def flaky() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 3:
                raise _overloaded()
            return "ok"

        with patch(
            "session_processor.utils.retry.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            assert await flaky() == "ok"

        assert call_count == 3
        assert mock_sleep.await_count == 2
        first, second = (c.args[0] for c in mock_sleep.await_args_list)
        assert 1.5 <= first < 1.8
        assert 3.0 <= second < 3.3

    async def test_gives_up_after_two_retries(self) -> None:
        """A persistent overload makes exactly three calls."""
        call_count = 0

        @retry_with_backoff()
        async def always_overloaded() -> None:
            nonlocal call_count
            call_count += 1
            raise _overloaded()

        with patch(
            "session_processor.utils.retry.asyncio.sleep", new_callable=AsyncMock
        ):
            with pytest.raises(UpstreamError) as exc_info:
                await always_overloaded()

        assert call_count == 3
        assert exc_info.value._retry_count == 2

    async def test_non_overload_error_is_not_retried(self) -> None:
        call_count = 0

        @retry_with_backoff()
        async def bad_request() -> None:
            nonlocal call_count
            call_count += 1
            raise UpstreamError("bad request", status=400)

        with patch(
            "session_processor.utils.retry.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            with pytest.raises(UpstreamError, match="bad request"):
                await bad_request()

        assert call_count == 1
        mock_sleep.assert_not_awaited()

    async def test_custom_predicate(self) -> None:
        call_count = 0

        @retry_with_backoff(max_retries=1, base_delay=0.01, retryable=lambda e: True)
        async def fail_once() -> str:
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise RuntimeError("transient")
            return "ok"

        assert await fail_once() == "ok"
        assert call_count == 2

    async def test_logs_warning_on_retry(self, caplog) -> None:
        call_count = 0

        @retry_with_backoff()
        async def fail_once() -> str:
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                raise _overloaded()
            return "ok"

        with patch(
            "session_processor.utils.retry.asyncio.sleep", new_callable=AsyncMock
        ):
            with caplog.at_level(logging.WARNING, logger="session_processor.utils.retry"):
                await fail_once()

        assert "Retry 1/2 for fail_once" in caplog.text

    async def test_preserves_function_name(self) -> None:
        @retry_with_backoff()
        async def my_named_function() -> None:
            pass

        assert my_named_function.__name__ == "my_named_function"
