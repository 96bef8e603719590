"""
requestflow - Request optimization and resilience for async data clients

Sits between application code and a tabular data backend and adds
deduplication of identical in-flight reads, batching of same-table reads,
classified retry with backoff, a circuit breaker and a bounded priority
queue.

Version: 1.0.0
    - RequestOptimizer with dedup, batching, retry and priority queue
    - ApiClient with request/response interceptors and efficiency score
    - ErrorClassifier with a closed error taxonomy
    - InMemoryBackend reference executor
    - Health checks and FastAPI routes (``api`` extra)

Quick Start:
    from requestflow import ApiClient, InMemoryBackend

    async with ApiClient(InMemoryBackend({"tasks": []})) as client:
        await client.insert("tasks", {"title": "Ship it", "done": False})
        response = await client.select("tasks", filters={"done": False})
        print(response.data, client.get_metrics().efficiency_score)
"""

__version__ = "1.0.0"
__author__ = "requestflow contributors"

from requestflow.exceptions import RequestFlowError

from requestflow.errors import (
    ApiError,
    ErrorClassifier,
    ErrorType,
    classify,
)

from requestflow.models import (
    ApiResponse,
    DeleteOp,
    InsertOp,
    Operation,
    OrderBy,
    Range,
    RequestConfig,
    SelectOp,
    UpdateOp,
    UpsertOp,
)

from requestflow.retry import BackoffPolicy, RetryConfig

from requestflow.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
    CircuitState,
)

from requestflow.optimizer import (
    OptimizerConfig,
    OptimizerMetrics,
    RequestOptimizer,
)

from requestflow.client import (
    ApiClient,
    ClientMetrics,
    RequestInterceptor,
    ResponseInterceptor,
    efficiency_score,
    logging_interceptors,
)

from requestflow.backends import Backend, InMemoryBackend

from requestflow.observability import (
    configure_logging,
    get_logger,
    LogConfig,
    LogFormat,
)

__all__ = [
    "__version__",
    # Errors
    "RequestFlowError",
    "ApiError",
    "ErrorClassifier",
    "ErrorType",
    "classify",
    # Models
    "ApiResponse",
    "Operation",
    "OrderBy",
    "Range",
    "RequestConfig",
    "SelectOp",
    "InsertOp",
    "UpdateOp",
    "DeleteOp",
    "UpsertOp",
    # Resilience
    "BackoffPolicy",
    "RetryConfig",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerState",
    "CircuitState",
    # Optimizer
    "OptimizerConfig",
    "OptimizerMetrics",
    "RequestOptimizer",
    # Client
    "ApiClient",
    "ClientMetrics",
    "RequestInterceptor",
    "ResponseInterceptor",
    "efficiency_score",
    "logging_interceptors",
    # Backends
    "Backend",
    "InMemoryBackend",
    # Observability
    "configure_logging",
    "get_logger",
    "LogConfig",
    "LogFormat",
]
