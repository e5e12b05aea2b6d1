from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional

from tenacity import RetryCallState
from tenacity.wait import wait_base

MAX_RETRIES = 5


def fibonacci(n: int) -> int:
    """1, 1, 2, 3, 5, 8, 13, 21, ... indexed from 0."""
    a, b = 1, 1
    for _ in range(max(n, 0)):
        a, b = b, a + b
    return a


def fibonacci_delay_ms(retry_count: int) -> int:
    return fibonacci(retry_count) * 1000


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP-date)."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(tz=timezone.utc)
    return max(0.0, (when - now).total_seconds())


def backoff_delay_ms(retry_count: int, error: Any = None) -> int:
    """Delay before retry number ``retry_count`` (1-based).

    Rate-limited responses wait for the server's Retry-After when given; every
    other retryable failure follows the Fibonacci schedule.
    """
    if error is not None and error.is_rate_limit_error() and error.retry_after is not None:
        return int(error.retry_after * 1000)
    return fibonacci_delay_ms(retry_count - 1)


class wait_retry_after_or_fibonacci(wait_base):
    """tenacity wait strategy wrapping :func:`backoff_delay_ms`."""

    def __call__(self, retry_state: RetryCallState) -> float:
        error = None
        if retry_state.outcome is not None and retry_state.outcome.failed:
            error = retry_state.outcome.exception()
        if error is not None and not hasattr(error, "is_rate_limit_error"):
            error = None
        return backoff_delay_ms(retry_state.attempt_number, error) / 1000.0
