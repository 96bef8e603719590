"""
Circuit breaker for a failing backend.

States:
1. CLOSED: calls flow through, consecutive failures are counted
2. OPEN: calls are rejected without touching the backend
3. HALF_OPEN: one trial call decides between CLOSED and OPEN; other
   calls are rejected until it settles

OPEN turns into HALF_OPEN lazily, on the first call made once the
recovery timeout has elapsed.
"""

import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from requestflow.errors import ApiError, CIRCUIT_OPEN_CODE, ErrorType
from requestflow.observability import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Breaker state."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class CircuitBreakerConfig:
    """
    Circuit breaker configuration.

    Attributes:
        failure_threshold: Consecutive failures that open the circuit
        recovery_timeout: Seconds the circuit stays open
    """

    failure_threshold: int = 5
    recovery_timeout: float = 60.0

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.recovery_timeout < 0:
            raise ValueError("recovery_timeout must be non-negative")


@dataclass
class CircuitBreakerState:
    """Snapshot of a breaker."""

    state: CircuitState
    failures: int
    next_attempt: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "next_attempt": self.next_attempt,
        }


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Example:
        breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=3))
        response = await breaker.call(lambda: executor(config))
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        name: str = "default",
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._time = time_fn
        self._failures = 0
        self._state = CircuitState.CLOSED
        self._next_attempt = self._time()
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            ApiError: network error with retry_after while the circuit is open
                or a half-open trial call is still running
        """
        if self._state == CircuitState.CLOSED:
            return
        if self._state == CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                raise self._rejection("Circuit breaker is half-open, trial call in progress", 1)
            self._trial_in_flight = True
            return
        now = self._time()
        if now < self._next_attempt:
            raise self._rejection("Circuit breaker is open", math.ceil(self._next_attempt - now))
        self._state = CircuitState.HALF_OPEN
        self._trial_in_flight = True
        logger.info(f"Circuit '{self.name}' half-open, allowing trial call")

    def _rejection(self, message: str, retry_after: int) -> ApiError:
        return ApiError(
            ErrorType.NETWORK,
            message,
            code=CIRCUIT_OPEN_CODE,
            retryable=True,
            retry_after=retry_after,
            context=self.name,
        )

    def release_trial(self) -> None:
        """Give up an admitted call without an outcome (e.g. it was cancelled)."""
        self._trial_in_flight = False

    def record_success(self) -> None:
        self._trial_in_flight = False
        if self._state != CircuitState.CLOSED:
            logger.info(f"Circuit '{self.name}' closed")
        self._failures = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._trial_in_flight = False
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.config.failure_threshold:
            self._state = CircuitState.OPEN
            self._next_attempt = self._time() + self.config.recovery_timeout
            logger.warning(
                f"Circuit '{self.name}' opened after {self._failures} failures",
                retry_in=self.config.recovery_timeout,
            )

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation through the breaker."""
        self.before_call()
        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        except BaseException:
            self.release_trial()
            raise
        self.record_success()
        return result

    def get_state(self) -> CircuitBreakerState:
        return CircuitBreakerState(
            state=self._state,
            failures=self._failures,
            next_attempt=self._next_attempt,
        )

    def reset(self) -> None:
        """Force the breaker closed."""
        self._failures = 0
        self._state = CircuitState.CLOSED
        self._next_attempt = self._time()
        self._trial_in_flight = False
