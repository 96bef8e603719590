"""
API Response Models.

Pydantic models for the health and metrics endpoints.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum

try:
    from pydantic import BaseModel, Field
except ImportError:
    raise ImportError(
        "pydantic is required for the API module. "
        "Install with: pip install requestflow[api]"
    )


class HealthStatusEnum(str, Enum):
    """Component and overall health."""
    healthy = "healthy"
    degraded = "degraded"
    unhealthy = "unhealthy"
    unknown = "unknown"


class CircuitStateEnum(str, Enum):
    """Circuit breaker states."""
    closed = "closed"
    open = "open"
    half_open = "half-open"


class ComponentHealthResponse(BaseModel):
    """Result of one component check."""
    name: str
    status: HealthStatusEnum
    message: Optional[str] = None
    latency_ms: Optional[float] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    checked_at: datetime


class HealthResponse(BaseModel):
    """Overall readiness."""
    status: HealthStatusEnum
    version: str
    uptime_seconds: float
    components: List[ComponentHealthResponse] = []
    checked_at: datetime


class CircuitBreakerResponse(BaseModel):
    """Circuit breaker snapshot."""
    state: CircuitStateEnum
    failures: int = Field(..., ge=0)
    next_attempt: float


class OptimizerMetricsResponse(BaseModel):
    """Optimizer counters and rates."""
    total_requests: int
    deduplicated_requests: int
    batched_requests: int
    retried_requests: int
    failed_requests: int
    success_rate: float
    deduplication_rate: float
    batching_rate: float
    retry_rate: float
    concurrent_requests: int
    queue_length: int
    pending_deduplication: int
    active_batches: int
    active_timers: int


class MetricsResponse(BaseModel):
    """Client metrics with the optimizer breakdown."""
    api_client_requests: int
    api_client_failures: int
    api_client_success_rate: float
    efficiency_score: int = Field(..., ge=0, le=100)
    optimizer: OptimizerMetricsResponse
    circuit_breakers: Dict[str, CircuitBreakerResponse] = Field(default_factory=dict)
