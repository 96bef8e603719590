"""
Health Check Module.

Health reporting for services that front a RequestOptimizer.

A component check is an async callable returning ComponentHealth. The
checker runs every registered check concurrently, each under its own
timeout, and reports the worst component status as the overall status.

Usage:
    from requestflow.api.health import HealthChecker, create_optimizer_check

    checker = HealthChecker(version="1.0.0")
    checker.add_check("optimizer", create_optimizer_check(optimizer))
    checker.add_check("database", ping_database, timeout=1.0)

    status = await checker.check_all()
    if not status.is_healthy:
        print(status.failing)
"""

import asyncio
import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from datetime import datetime, timezone

from requestflow.circuit_breaker import CircuitBreakerState, CircuitState
from requestflow.observability import get_logger
from requestflow.optimizer import OptimizerMetrics, RequestOptimizer


logger = get_logger(__name__)


class ComponentStatus(Enum):
    """Health status of a component."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


# Worst status wins when components are combined
_SEVERITY = {
    ComponentStatus.HEALTHY: 0,
    ComponentStatus.UNKNOWN: 1,
    ComponentStatus.DEGRADED: 2,
    ComponentStatus.UNHEALTHY: 3,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ComponentHealth:
    """Result of one component check."""
    name: str
    status: ComponentStatus
    message: Optional[str] = None
    latency_ms: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": self.details,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class HealthStatus:
    """Aggregated result of all component checks."""
    status: ComponentStatus
    version: str
    uptime_seconds: float
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=_utcnow)

    @property
    def is_healthy(self) -> bool:
        return self.status == ComponentStatus.HEALTHY

    @property
    def is_degraded(self) -> bool:
        return self.status == ComponentStatus.DEGRADED

    @property
    def is_unhealthy(self) -> bool:
        return self.status == ComponentStatus.UNHEALTHY

    @property
    def failing(self) -> List[str]:
        """Names of components that are not healthy."""
        return [c.name for c in self.components if c.status != ComponentStatus.HEALTHY]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "uptime_seconds": self.uptime_seconds,
            "components": [c.to_dict() for c in self.components],
            "checked_at": self.checked_at.isoformat(),
        }


HealthCheckFunc = Callable[[], Awaitable[ComponentHealth]]


def worst_status(statuses: List[ComponentStatus]) -> ComponentStatus:
    """Combine component statuses; no components counts as healthy."""
    if not statuses:
        return ComponentStatus.HEALTHY
    return max(statuses, key=_SEVERITY.__getitem__)


class HealthChecker:
    """
    Runs registered component checks and derives an overall status.

    A check that raises or runs past its timeout is reported as
    UNHEALTHY rather than propagating to the caller.
    """

    def __init__(
        self,
        version: str = "unknown",
        default_timeout: float = 5.0,
    ):
        """
        Args:
            version: Application version reported by check_all()
            default_timeout: Seconds allowed for a check without its own timeout
        """
        self._version = version
        self._default_timeout = default_timeout
        self._checks: Dict[str, Tuple[HealthCheckFunc, Optional[float]]] = {}
        self._started = time.monotonic()

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started

    @property
    def check_names(self) -> List[str]:
        return list(self._checks)

    def add_check(
        self,
        name: str,
        check_func: HealthCheckFunc,
        timeout: Optional[float] = None,
    ) -> None:
        """Register (or replace) the check for a component."""
        self._checks[name] = (check_func, timeout)

    def remove_check(self, name: str) -> None:
        self._checks.pop(name, None)

    async def check(self, name: str, timeout: Optional[float] = None) -> ComponentHealth:
        """
        Run one registered check.

        Args:
            name: Component name
            timeout: Overrides the check's own and the default timeout
        """
        registered = self._checks.get(name)
        if registered is None:
            return ComponentHealth(
                name=name,
                status=ComponentStatus.UNKNOWN,
                message=f"No health check registered for '{name}'",
            )

        check_func, check_timeout = registered
        limit = timeout or check_timeout or self._default_timeout
        loop = asyncio.get_running_loop()
        started = loop.time()

        def elapsed_ms() -> float:
            return (loop.time() - started) * 1000

        try:
            result = await asyncio.wait_for(check_func(), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning(f"Health check '{name}' timed out after {limit}s")
            return ComponentHealth(
                name=name,
                status=ComponentStatus.UNHEALTHY,
                message=f"Health check timed out after {limit}s",
                latency_ms=limit * 1000,
            )
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {e}")
            return ComponentHealth(
                name=name,
                status=ComponentStatus.UNHEALTHY,
                message=f"Health check failed: {e}",
                latency_ms=elapsed_ms(),
            )

        result.latency_ms = elapsed_ms()
        return result

    async def check_all(self, timeout: Optional[float] = None) -> HealthStatus:
        """Run every registered check concurrently."""
        components = await asyncio.gather(*(self.check(name, timeout) for name in self._checks))
        return HealthStatus(
            status=worst_status([c.status for c in components]),
            version=self._version,
            uptime_seconds=self.uptime_seconds,
            components=list(components),
        )

    async def liveness(self) -> ComponentHealth:
        """Healthy whenever the event loop can answer."""
        return ComponentHealth(
            name="liveness",
            status=ComponentStatus.HEALTHY,
            message="Application is running",
        )

    async def readiness(self) -> HealthStatus:
        return await self.check_all()


def _optimizer_status(
    metrics: OptimizerMetrics,
    breakers: Dict[str, CircuitBreakerState],
    success_threshold: float,
) -> Tuple[ComponentStatus, str]:
    open_keys = sorted(k for k, s in breakers.items() if s.state == CircuitState.OPEN)
    if open_keys:
        return ComponentStatus.UNHEALTHY, f"Circuit open: {', '.join(open_keys)}"
    if any(s.state == CircuitState.HALF_OPEN for s in breakers.values()):
        return ComponentStatus.DEGRADED, "Circuit recovering (half-open)"
    if metrics.success_rate < success_threshold:
        return ComponentStatus.DEGRADED, f"Low success rate: {metrics.success_rate:.1f}%"
    return ComponentStatus.HEALTHY, f"Success rate: {metrics.success_rate:.1f}%"


def create_optimizer_check(
    optimizer: RequestOptimizer,
    name: str = "optimizer",
    success_threshold: float = 90.0,
) -> HealthCheckFunc:
    """
    Build a check from an optimizer's breakers and metrics.

    UNHEALTHY while any circuit is open. DEGRADED while a circuit is
    half-open or the success rate is below success_threshold (percent).
    """
    async def check() -> ComponentHealth:
        metrics = optimizer.get_metrics()
        breakers = optimizer.circuit_breaker_states()
        status, message = _optimizer_status(metrics, breakers, success_threshold)
        return ComponentHealth(
            name=name,
            status=status,
            message=message,
            details={
                "metrics": metrics.to_dict(),
                "circuit_breakers": {key: s.to_dict() for key, s in breakers.items()},
            },
        )

    return check
