"""Backoff computation for retryable provider failures."""

from __future__ import annotations

from yeoman_gateway.config import RetryConfig
from yeoman_gateway.errors import ProviderError, RateLimitedError


def backoff_seconds(config: RetryConfig, attempt: int, error: ProviderError | None = None) -> float:
    """Delay before retry number ``attempt + 1`` on the same hop.

    Exponential in ``attempt`` and capped at ``max_delay_ms``. A 429 that
    carries a retry-after hint waits for the hint instead, under the same cap.
    """
    cap = config.max_delay_ms / 1000
    if isinstance(error, RateLimitedError) and error.retry_after is not None:
        return min(error.retry_after, cap)
    return min(config.base_delay_ms * (2**attempt) / 1000, cap)
