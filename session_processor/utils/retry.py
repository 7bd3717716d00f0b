"""Bounded retry policy for overloaded upstream services.

Only overload responses (HTTP 503 / "UNAVAILABLE") are retried; every
other error propagates immediately. Delay follows
min(10s, 1.5s * 2^(attempt-1) + jitter(0..300ms)) and at most two retries
are made per call. The policy keeps no state between calls.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from functools import wraps
from typing import Any

import httpx

logger = logging.getLogger(__name__)

MAX_RETRIES = 2
BASE_DELAY_SECONDS = 1.5
MAX_DELAY_SECONDS = 10.0
MAX_JITTER_MS = 300

OVERLOAD_STATUS = 503
OVERLOAD_CODE = "UNAVAILABLE"


def _status_and_code(error: BaseException) -> tuple[Any, Any]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code, None
    return getattr(error, "status", None), getattr(error, "code", None)


def should_retry(error: BaseException) -> bool:
    """Return True iff the error reports upstream overload."""
    status, code = _status_and_code(error)
    return (
        status == OVERLOAD_STATUS
        or status == OVERLOAD_CODE
        or code == OVERLOAD_STATUS
        or code == OVERLOAD_CODE
    )


def delay_for(
    error: BaseException,
    attempt: int,
    base_delay: float = BASE_DELAY_SECONDS,
) -> float:
    """Compute the backoff delay in seconds before retry number ``attempt``.

    Args:
        error: The error raised by the failed call.
        attempt: 1-based retry number.
        base_delay: Delay before the first retry, excluding jitter.

    Returns:
        Delay in seconds, never above MAX_DELAY_SECONDS.

    Raises:
        The given error itself when it is not retryable.
    """
    if not should_retry(error):
        raise error
    return _backoff(attempt, base_delay)


def _backoff(attempt: int, base_delay: float) -> float:
    jitter = random.randrange(MAX_JITTER_MS) / 1000
    return min(MAX_DELAY_SECONDS, base_delay * (2 ** (attempt - 1)) + jitter)


def retry_with_backoff(
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY_SECONDS,
    retryable: Callable[[BaseException], bool] = should_retry,
) -> Callable:
    """Decorator for retrying async functions on overload errors.

    Args:
        max_retries: Maximum number of retry attempts (default 2, so three
            calls in total).
        base_delay: Base delay in seconds before the first retry.
        retryable: Predicate selecting errors eligible for retry. Other
            errors are re-raised immediately with _retry_count attached.

    Returns:
        Decorator that wraps an async function with retry logic.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt = 0
            while True:
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    if not retryable(exc) or attempt >= max_retries:
                        exc._retry_count = attempt  # type: ignore[attr-defined]
                        raise
                    attempt += 1
                    delay = _backoff(attempt, base_delay)
                    logger.warning(
                        "Retry %d/%d for %s after %.2fs: %s",
                        attempt,
                        max_retries,
                        func.__name__,
                        delay,
                        exc,
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
