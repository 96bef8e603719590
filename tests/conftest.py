"""
Shared pytest configuration and fixtures for all tests.

This module provides:
- A manual clock and a recording sleep so retry and breaker timing is
  deterministic
- An optimizer factory that cleans up every optimizer it created
- A seeded in-memory backend
"""

import random

import pytest

from requestflow.backends import InMemoryBackend
from requestflow.optimizer import OptimizerConfig, RequestOptimizer
from requestflow.retry import BackoffPolicy
from requestflow.testing import ManualClock


@pytest.fixture
def clock() -> ManualClock:
    """Clock starting at an arbitrary non-zero instant."""
    return ManualClock()


@pytest.fixture
def sleeps() -> list:
    """Seconds passed to the recording sleep, in call order."""
    return []


@pytest.fixture
def fake_sleep(sleeps):
    """Sleep replacement that records the wait and returns immediately."""
    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return sleep


@pytest.fixture
async def make_optimizer(clock, fake_sleep):
    """
    Build optimizers wired to the manual clock and recording sleep.

    Keyword arguments are OptimizerConfig fields.
    """
    created = []

    def factory(**overrides) -> RequestOptimizer:
        config = OptimizerConfig(**overrides)
        optimizer = RequestOptimizer(
            config,
            backoff=BackoffPolicy(config.retry, rng=random.Random(0)),
            time_fn=clock,
            sleep=fake_sleep,
        )
        created.append(optimizer)
        return optimizer

    yield factory

    for optimizer in created:
        optimizer.cleanup()


@pytest.fixture
def tasks_backend() -> InMemoryBackend:
    """Backend with a small tasks table."""
    return InMemoryBackend({
        "tasks": [
            {"id": 1, "title": "Write docs", "done": False, "priority": 2, "owner": "ana"},
            {"id": 2, "title": "Fix login", "done": True, "priority": 1, "owner": "ben"},
            {"id": 3, "title": "Ship release", "done": False, "priority": 3, "owner": None},
        ],
        "projects": [
            {"id": 10, "name": "Core"},
        ],
    })


# Test markers for grouping tests
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no event loop timing)"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that wait on real timers"
    )
