"""
Testing Utilities module.

Executor doubles and a manual clock for exercising the optimizer and
client without a real backend or real waiting.

Usage:
    from requestflow.testing import MockExecutor, ManualClock

    executor = MockExecutor(data=[{"id": 1}])
    optimizer = RequestOptimizer(time_fn=ManualClock())
"""

from requestflow.testing.mocks import (
    FlakyExecutor,
    ManualClock,
    MockExecutor,
)

__all__ = [
    "FlakyExecutor",
    "ManualClock",
    "MockExecutor",
]
