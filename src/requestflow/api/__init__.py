"""
API Module.

Health checks plus optional FastAPI routes for services built on an
ApiClient. The routes need the ``api`` extra (fastapi, pydantic).

Usage:
    from fastapi import FastAPI
    from requestflow.api.routes import health_router, metrics_router

    app = FastAPI()
    app.state.api_client = client
    app.include_router(health_router)
    app.include_router(metrics_router)
"""

from requestflow.api.health import (
    ComponentHealth,
    ComponentStatus,
    HealthChecker,
    HealthStatus,
    create_optimizer_check,
    worst_status,
)

__all__ = [
    "ComponentHealth",
    "ComponentStatus",
    "HealthChecker",
    "HealthStatus",
    "create_optimizer_check",
    "worst_status",
]
