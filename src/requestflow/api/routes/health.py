"""
Health API Routes.

Liveness, readiness and metrics for an application that owns an ApiClient.
The client is read from ``app.state.api_client``; an optional
``app.state.health_checker`` adds component checks beyond the optimizer.
"""

from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Request

from requestflow.api.health import HealthChecker, HealthStatus, create_optimizer_check
from requestflow.api.models import (
    CircuitBreakerResponse,
    ComponentHealthResponse,
    HealthResponse,
    MetricsResponse,
    OptimizerMetricsResponse,
)
from requestflow.client import ApiClient

router = APIRouter(prefix="/health", tags=["Health"])
metrics_router = APIRouter(tags=["Metrics"])


def _client(request: Request) -> ApiClient:
    client = getattr(request.app.state, "api_client", None)
    if client is None:
        raise HTTPException(status_code=503, detail="API client is not configured")
    return client


def _checker(request: Request, client: ApiClient) -> HealthChecker:
    checker = getattr(request.app.state, "health_checker", None)
    if checker is None:
        checker = HealthChecker(version=getattr(request.app, "version", "unknown"))
        request.app.state.health_checker = checker
    if "optimizer" not in checker.check_names:
        checker.add_check("optimizer", create_optimizer_check(client.optimizer))
    return checker


def _to_response(status: HealthStatus) -> HealthResponse:
    return HealthResponse(
        status=status.status.value,
        version=status.version,
        uptime_seconds=status.uptime_seconds,
        components=[
            ComponentHealthResponse(**component.to_dict())
            for component in status.components
        ],
        checked_at=status.checked_at,
    )


@router.get("/live", response_model=ComponentHealthResponse)
async def liveness(request: Request) -> ComponentHealthResponse:
    """Liveness probe; does not touch the backend."""
    checker = getattr(request.app.state, "health_checker", None) or HealthChecker()
    health = await checker.liveness()
    return ComponentHealthResponse(**health.to_dict())


@router.get("/ready", response_model=HealthResponse)
async def readiness(request: Request) -> HealthResponse:
    """
    Readiness probe.

    Returns 503 while any component is unhealthy (for example an open
    circuit breaker), so load balancers stop routing traffic here.
    """
    client = _client(request)
    status = await _checker(request, client).readiness()
    response = _to_response(status)
    if status.is_unhealthy:
        raise HTTPException(status_code=503, detail=response.model_dump(mode="json"))
    return response


@metrics_router.get("/metrics", response_model=MetricsResponse)
async def metrics(request: Request) -> MetricsResponse:
    """Client and optimizer metrics with circuit breaker snapshots."""
    client = _client(request)
    client_metrics = client.get_metrics()
    breakers = client.optimizer.circuit_breaker_states()

    return MetricsResponse(
        api_client_requests=client_metrics.api_client_requests,
        api_client_failures=client_metrics.api_client_failures,
        api_client_success_rate=client_metrics.api_client_success_rate,
        efficiency_score=client_metrics.efficiency_score,
        optimizer=OptimizerMetricsResponse(**asdict(client_metrics.optimizer)),
        circuit_breakers={
            key: CircuitBreakerResponse(**state.to_dict())
            for key, state in breakers.items()
        },
    )
