"""
API Routes for requestflow.

- health: liveness and readiness probes
- metrics: client, optimizer and circuit breaker metrics
"""

from requestflow.api.routes.health import router as health_router
from requestflow.api.routes.health import metrics_router

__all__ = [
    "health_router",
    "metrics_router",
]
