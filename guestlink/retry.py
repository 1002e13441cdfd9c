"""Exponential backoff with jitter for datastore, vault and downstream calls.

Retries on transient HTTP errors (429, 500, 502, 503, 504), connection
errors, and any caller-supplied exception types (e.g. Redis connection
errors).  Respects Retry-After headers.  Logs each retry attempt.  The
attempt count is small and fixed so a failing dependency fails the request
quickly instead of piling up handlers.
"""

from __future__ import annotations

import functools
import logging
import random
import time
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)

# HTTP status codes that trigger a retry
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    httpx.ConnectError,
    httpx.ReadTimeout,
    ConnectionError,
    TimeoutError,
)


def retry_with_backoff(
    max_retries: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
    jitter: float = 0.3,
    retry_on: tuple[type[BaseException], ...] = (),
) -> Callable:
    """Decorator: retry a function with exponential backoff + jitter.

    Args:
        max_retries: Maximum number of retry attempts (total calls = max_retries + 1).
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay cap in seconds.
        jitter: Jitter factor (0.0-1.0). Adds randomness to prevent thundering herd.
        retry_on: Extra exception types treated as transient.
    """
    transient = _CONNECTION_ERRORS + tuple(retry_on)

    def decorator(fn: Callable) -> Callable:
        name = getattr(fn, "__name__", None) or repr(fn)

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(max_retries + 1):
                try:
                    return fn(*args, **kwargs)
                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    if status not in RETRYABLE_STATUS_CODES or attempt == max_retries:
                        raise
                    delay = compute_delay(attempt, base_delay, max_delay, jitter, e.response)
                    logger.warning(
                        "Retry %d/%d for %s (HTTP %d), waiting %.2fs",
                        attempt + 1,
                        max_retries,
                        name,
                        status,
                        delay,
                    )
                    time.sleep(delay)
                except transient as e:
                    if attempt == max_retries:
                        raise
                    delay = compute_delay(attempt, base_delay, max_delay, jitter)
                    logger.warning(
                        "Retry %d/%d for %s (transient error: %s), waiting %.2fs",
                        attempt + 1,
                        max_retries,
                        name,
                        type(e).__name__,
                        delay,
                    )
                    time.sleep(delay)
            raise AssertionError("unreachable")  # pragma: no cover

        return wrapper

    return decorator


def compute_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    response: httpx.Response | None = None,
) -> float:
    """Compute delay with exponential backoff + jitter, respecting Retry-After."""
    if response is not None:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return min(float(retry_after), max_delay)
            except ValueError:
                pass

    # Exponential backoff: base * 2^attempt
    delay = min(base_delay * (2**attempt), max_delay)

    jitter_amount = delay * jitter
    delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)
