"""
Tests for RetryConfig and BackoffPolicy.
"""

import random

import pytest

from requestflow.errors import ApiError, ErrorType
from requestflow.retry import BackoffPolicy, RetryConfig


class MaxRandom(random.Random):
    """Random source pinned just below 1.0."""

    def random(self):
        return 0.999999


class ZeroRandom(random.Random):
    def random(self):
        return 0.0


@pytest.mark.unit
class TestRetryConfig:
    """Tests for RetryConfig validation."""

    def test_defaults(self):
        config = RetryConfig()
        assert config.max_retries == 3
        assert config.base_delay_ms == 1000
        assert config.max_delay_ms == 30000
        assert config.jitter_ratio == 0.1

    @pytest.mark.parametrize("kwargs", [
        {"max_retries": 0},
        {"base_delay_ms": -1},
        {"base_delay_ms": 5000, "max_delay_ms": 1000},
        {"jitter_ratio": 1.5},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RetryConfig(**kwargs)


@pytest.mark.unit
class TestBackoffDelay:
    """Tests for BackoffPolicy.delay()."""

    def test_first_attempt_within_jitter_window(self):
        policy = BackoffPolicy()
        for _ in range(200):
            delay = policy.delay(ApiError.network(), attempt=1)
            assert 1000 <= delay < 1100

    def test_no_jitter_is_pure_exponential(self):
        policy = BackoffPolicy(rng=ZeroRandom())
        error = ApiError.from_http_status(503)
        assert [policy.delay(error, n) for n in range(1, 6)] == [
            1000, 2000, 4000, 8000, 16000,
        ]

    def test_monotonic_and_capped(self):
        policy = BackoffPolicy(rng=random.Random(42))
        error = ApiError.from_http_status(500)
        delays = [policy.delay(error, n) for n in range(1, 6)]
        assert delays == sorted(delays)
        assert all(d <= 30000 for d in delays)

    def test_monotonic_even_at_worst_jitter(self):
        policy = BackoffPolicy(rng=MaxRandom())
        delays = [policy.delay(ApiError.network(), n) for n in range(1, 6)]
        assert delays == sorted(delays)

    def test_cap(self):
        policy = BackoffPolicy(rng=MaxRandom())
        assert policy.delay(ApiError.network(), attempt=10) == 30000

    def test_retry_after_wins(self):
        policy = BackoffPolicy()
        error = ApiError.rate_limit(retry_after=3)
        assert policy.delay(error, attempt=1) == 3000
        assert policy.delay(error, attempt=4) == 3000

    def test_zero_retry_after_means_retry_now(self):
        policy = BackoffPolicy(rng=MaxRandom())
        assert policy.delay(ApiError.rate_limit(retry_after=0), attempt=3) == 0.0

    def test_retry_after_is_not_capped(self):
        policy = BackoffPolicy()
        assert policy.delay(ApiError.rate_limit(retry_after=120), attempt=1) == 120000

    def test_custom_config(self):
        policy = BackoffPolicy(
            RetryConfig(base_delay_ms=10, max_delay_ms=50, jitter_ratio=0.0),
        )
        error = ApiError.network()
        assert [policy.delay(error, n) for n in range(1, 5)] == [10, 20, 40, 50]


@pytest.mark.unit
class TestShouldRetry:
    """Tests for BackoffPolicy.should_retry()."""

    def test_retryable_below_limit(self):
        policy = BackoffPolicy()
        error = ApiError.from_http_status(503)
        assert policy.should_retry(error, 1)
        assert policy.should_retry(error, 2)
        assert not policy.should_retry(error, 3)

    def test_non_retryable(self):
        policy = BackoffPolicy()
        assert not policy.should_retry(ApiError.auth(), 1)
        assert not policy.should_retry(ApiError(ErrorType.UNKNOWN, "x"), 1)

    def test_explicit_limit(self):
        policy = BackoffPolicy()
        error = ApiError.network()
        assert policy.should_retry(error, 4, max_retries=5)
        assert not policy.should_retry(error, 1, max_retries=1)
