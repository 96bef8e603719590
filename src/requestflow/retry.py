"""
Retry configuration and backoff policy.

BackoffPolicy is pure: it only computes delays. The optimizer owns the
retry loop and the sleeping.
"""

import random
from dataclasses import dataclass
from typing import Optional

from requestflow.errors import ApiError


@dataclass
class RetryConfig:
    """
    Retry configuration.

    Attributes:
        max_retries: Total attempts per request (first call included)
        base_delay_ms: Delay before the first retry
        max_delay_ms: Upper bound for any computed delay
        jitter_ratio: Jitter as a fraction of the exponential component
    """

    max_retries: int = 3
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 30000.0
    jitter_ratio: float = 0.1

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be non-negative")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0 and 1")


class BackoffPolicy:
    """
    Computes the wait before a retry.

    A server supplied retry_after wins. Otherwise exponential backoff with
    jitter, capped:

        min(base * 2**(attempt - 1) + uniform(0, ratio * exponential), cap)

    Example:
        policy = BackoffPolicy(rng=random.Random(7))
        policy.delay(ApiError.network(), attempt=1)  # 1000..1100
    """

    def __init__(self, config: Optional[RetryConfig] = None, rng: Optional[random.Random] = None):
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()

    def delay(self, error: ApiError, attempt: int) -> float:
        """
        Delay in milliseconds before retrying.

        Args:
            error: Classified failure of the previous attempt
            attempt: 1-indexed number of the attempt that failed

        Returns:
            Milliseconds to wait
        """
        if error.retry_after is not None:
            return float(error.retry_after) * 1000.0

        exponential = self.config.base_delay_ms * (2 ** (max(attempt, 1) - 1))
        jitter = self._rng.random() * self.config.jitter_ratio * exponential
        return min(exponential + jitter, self.config.max_delay_ms)

    def should_retry(self, error: ApiError, attempt: int, max_retries: Optional[int] = None) -> bool:
        """Whether a failed attempt gets another try."""
        limit = max_retries if max_retries is not None else self.config.max_retries
        return error.is_retryable and attempt < limit
