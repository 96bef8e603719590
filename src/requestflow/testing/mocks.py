"""
Test doubles for executors and clocks.

Usage:
    executor = MockExecutor(data=[{"id": 1}], delay=0.01)
    flaky = FlakyExecutor(failures=2, error=ApiError.network())
    clock = ManualClock()

    optimizer = RequestOptimizer(time_fn=clock)
    clock.advance(61)
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from requestflow.models import ApiResponse, RequestConfig


ResponseFactory = Callable[[RequestConfig], Any]


@dataclass
class ManualClock:
    """
    Monotonic clock advanced by hand, in seconds.

    Pass the instance as ``time_fn``; it is callable.
    """

    now: float = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class MockExecutor:
    """
    Executor returning canned responses and recording every call.

    Each call returns ``responses`` in order (the last one repeats), or a
    success wrapping ``data`` when no responses are given. A response may
    be an ApiResponse, an exception to raise, or a callable taking the
    config and returning either.
    """

    def __init__(
        self,
        data: Any = None,
        responses: Optional[list[Union[ApiResponse, BaseException, ResponseFactory]]] = None,
        delay: float = 0.0,
    ):
        """
        Initialize mock executor.

        Args:
            data: Payload of the default success response
            responses: Ordered outcomes, the last repeats
            delay: Seconds to sleep before answering
        """
        self.data = data if data is not None else []
        self.responses = list(responses or [])
        self.delay = delay
        self.calls: list[RequestConfig] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def _next_outcome(self) -> Any:
        if not self.responses:
            return ApiResponse.success(self.data)
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[index]

    async def __call__(self, config: RequestConfig) -> ApiResponse:
        self.calls.append(config)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self._next_outcome()
            if callable(outcome) and not isinstance(outcome, (ApiResponse, BaseException)):
                outcome = outcome(config)
            if isinstance(outcome, BaseException):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1

    def reset(self) -> None:
        self.calls.clear()
        self.max_in_flight = 0


@dataclass
class FlakyExecutor:
    """
    Executor that raises ``error`` for the first ``failures`` calls and then
    succeeds with ``data``.
    """

    failures: int
    error: BaseException = field(default_factory=lambda: ConnectionError("connection reset"))
    data: Any = field(default_factory=list)
    call_count: int = 0

    async def __call__(self, config: RequestConfig) -> ApiResponse:
        self.call_count += 1
        if self.call_count <= self.failures:
            raise self.error
        return ApiResponse.success(self.data)
