"""
API client.

Ergonomic CRUD verbs over a RequestOptimizer, with ordered request and
response interceptor pipelines and aggregated metrics.

Usage:
    from requestflow import ApiClient, InMemoryBackend

    client = ApiClient(InMemoryBackend({"tasks": []}))
    client.add_request_interceptor(on_request=add_tenant_filter)

    created = await client.insert("tasks", {"title": "Ship it"})
    open_tasks = await client.select("tasks", filters={"done": False})

    print(client.get_metrics().efficiency_score)
"""

import asyncio
import inspect
from dataclasses import asdict, dataclass, replace
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Union

from requestflow.errors import ApiError, ErrorClassifier
from requestflow.models import ApiResponse, Operation, RequestConfig
from requestflow.observability import get_logger
from requestflow.optimizer import (
    DEFAULT_PRIORITY,
    Executor,
    OptimizerMetrics,
    RequestOptimizer,
    as_executor,
)


logger = get_logger(__name__)


MaybeAwaitable = Union[Any, Awaitable[Any]]


@dataclass
class RequestInterceptor:
    """
    Hooks applied to a request before it is executed.

    on_request receives the config and returns the (possibly replaced)
    config; returning None keeps it. on_request_error is notified with the
    classified error when on_request raises.
    """

    on_request: Optional[Callable[[RequestConfig], MaybeAwaitable]] = None
    on_request_error: Optional[Callable[[ApiError], MaybeAwaitable]] = None


@dataclass
class ResponseInterceptor:
    """
    Hooks applied to every response.

    on_response_error runs first for error responses and may return a
    replacement ApiError (or None to keep the original). on_response then
    receives the response and returns the (possibly replaced) response.
    """

    on_response: Optional[Callable[[ApiResponse], MaybeAwaitable]] = None
    on_response_error: Optional[Callable[[ApiError], MaybeAwaitable]] = None


@dataclass
class ClientMetrics:
    """Client counters merged with optimizer metrics."""

    api_client_requests: int
    api_client_failures: int
    api_client_success_rate: float
    optimizer: OptimizerMetrics
    efficiency_score: int

    def to_dict(self) -> dict:
        data = {
            "api_client_requests": self.api_client_requests,
            "api_client_failures": self.api_client_failures,
            "api_client_success_rate": self.api_client_success_rate,
            "efficiency_score": self.efficiency_score,
        }
        data.update(asdict(self.optimizer))
        return data


async def _resolve(value: MaybeAwaitable) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def efficiency_score(metrics: OptimizerMetrics) -> int:
    """
    0-100 score: failures and retries cost points, deduplication and
    batching earn them.
    """
    score = 100.0
    if metrics.total_requests > 0:
        failure_rate = (metrics.failed_requests / metrics.total_requests) * 100
        score -= failure_rate * 2
    score += metrics.deduplication_rate * 0.5
    score += metrics.batching_rate * 0.3
    if metrics.total_requests > 0:
        retry_rate = (metrics.retried_requests / metrics.total_requests) * 100
        score -= retry_rate * 0.5
    return max(0, min(100, round(score)))


class ApiClient:
    """
    CRUD client over an executor or backend.

    Every verb returns an ApiResponse; failures never raise, they come back
    as response.error.
    """

    def __init__(
        self,
        executor: Union[Executor, Any],
        optimizer: Optional[RequestOptimizer] = None,
        classifier: Optional[ErrorClassifier] = None,
    ) -> None:
        """
        Initialize ApiClient.

        Args:
            executor: Coroutine function or backend performing the calls
            optimizer: Optimizer to route requests through (a private one
                is created when omitted)
            classifier: Error classifier for interceptor failures
        """
        self._backend = executor
        self._executor = as_executor(executor)
        self._classifier = classifier or ErrorClassifier()
        self._optimizer = optimizer or RequestOptimizer(classifier=self._classifier)
        self._request_interceptors: List[RequestInterceptor] = []
        self._response_interceptors: List[ResponseInterceptor] = []
        self._request_count = 0
        self._failure_count = 0

    @property
    def optimizer(self) -> RequestOptimizer:
        return self._optimizer

    # Interceptor management

    def add_request_interceptor(
        self,
        interceptor: Optional[RequestInterceptor] = None,
        *,
        on_request: Optional[Callable[[RequestConfig], MaybeAwaitable]] = None,
        on_request_error: Optional[Callable[[ApiError], MaybeAwaitable]] = None,
    ) -> RequestInterceptor:
        """Register a request interceptor; returns it for later removal."""
        interceptor = interceptor or RequestInterceptor(on_request, on_request_error)
        self._request_interceptors.append(interceptor)
        return interceptor

    def add_response_interceptor(
        self,
        interceptor: Optional[ResponseInterceptor] = None,
        *,
        on_response: Optional[Callable[[ApiResponse], MaybeAwaitable]] = None,
        on_response_error: Optional[Callable[[ApiError], MaybeAwaitable]] = None,
    ) -> ResponseInterceptor:
        """Register a response interceptor; returns it for later removal."""
        interceptor = interceptor or ResponseInterceptor(on_response, on_response_error)
        self._response_interceptors.append(interceptor)
        return interceptor

    def remove_interceptor(self, interceptor: Union[RequestInterceptor, ResponseInterceptor]) -> None:
        if interceptor in self._request_interceptors:
            self._request_interceptors.remove(interceptor)
        if interceptor in self._response_interceptors:
            self._response_interceptors.remove(interceptor)

    # Pipelines

    async def _process_request_interceptors(self, config: RequestConfig) -> RequestConfig:
        for interceptor in self._request_interceptors:
            if interceptor.on_request is None:
                continue
            try:
                result = await _resolve(interceptor.on_request(config))
                if result is not None:
                    if not isinstance(result, RequestConfig):
                        raise ApiError.validation(
                            None, f"Request interceptor returned {type(result).__name__}"
                        )
                    config = result
            except Exception as exc:
                error = self._classifier.classify(exc)
                if interceptor.on_request_error is not None:
                    try:
                        await _resolve(interceptor.on_request_error(error))
                    except Exception as handler_exc:
                        error = self._classifier.classify(handler_exc)
                if error is exc:
                    raise
                raise error from exc
        return config

    async def _process_response_interceptors(self, response: ApiResponse) -> ApiResponse:
        for interceptor in self._response_interceptors:
            try:
                if response.error is not None and interceptor.on_response_error is not None:
                    translated = await _resolve(interceptor.on_response_error(response.error))
                    if isinstance(translated, ApiError):
                        response = ApiResponse.failure(translated)
                if interceptor.on_response is not None:
                    result = await _resolve(interceptor.on_response(response))
                    if result is not None:
                        response = result
            except Exception as exc:
                return ApiResponse.failure(self._classifier.classify(exc))
        return response

    async def _run(
        self,
        config: Union[RequestConfig, Callable[[], RequestConfig]],
        submit: Callable[[RequestConfig], Awaitable[ApiResponse]],
    ) -> ApiResponse:
        self._request_count += 1
        try:
            if callable(config):
                config = config()
            config = await self._process_request_interceptors(config)
            # Deduplicated callers share one response object; each gets its own envelope.
            response = replace(await submit(config))
        except Exception as exc:
            response = ApiResponse.failure(self._classifier.classify(exc))

        response = await self._process_response_interceptors(response)
        if response.error is not None:
            self._failure_count += 1
        return response

    # Core query methods

    async def query(self, config: RequestConfig) -> ApiResponse:
        """Run a request through interceptors and the optimizer."""
        return await self._run(
            config,
            lambda c: self._optimizer.optimize_request(c, self._executor),
        )

    async def priority_query(self, config: RequestConfig, priority: float = DEFAULT_PRIORITY) -> ApiResponse:
        """Run a request through the optimizer's priority queue."""
        return await self._run(
            config,
            lambda c: self._optimizer.queue_request(c, self._executor, priority),
        )

    def _build(self, table: str, operation: Operation, **options: Any) -> Callable[[], RequestConfig]:
        # Deferred so that validation errors come back as responses.
        return lambda: RequestConfig(table=table, operation=operation, **options)

    async def _query_built(self, build: Callable[[], RequestConfig]) -> ApiResponse:
        return await self._run(build, lambda c: self._optimizer.optimize_request(c, self._executor))

    # Convenience methods for common operations

    async def select(self, table: str, **options: Any) -> ApiResponse:
        return await self._query_built(self._build(table, Operation.SELECT, **options))

    async def select_single(self, table: str, **options: Any) -> ApiResponse:
        """Select at most one row; data is the row or None."""
        options["limit"] = 1
        response = await self.select(table, **options)
        if response.error is not None or not isinstance(response.data, list):
            return response
        rows = response.data
        return replace(response, data=rows[0] if rows else None)

    async def insert(self, table: str, data: Any, **options: Any) -> ApiResponse:
        return await self._query_built(self._build(table, Operation.INSERT, params=data, **options))

    async def update(self, table: str, data: Any, **options: Any) -> ApiResponse:
        return await self._query_built(self._build(table, Operation.UPDATE, params=data, **options))

    async def delete(self, table: str, **options: Any) -> ApiResponse:
        return await self._query_built(self._build(table, Operation.DELETE, **options))

    async def upsert(self, table: str, data: Any, **options: Any) -> ApiResponse:
        return await self._query_built(self._build(table, Operation.UPSERT, params=data, **options))

    # Batch operations

    async def batch(self, requests: List[RequestConfig]) -> List[ApiResponse]:
        """Run requests concurrently; results follow input order."""
        return list(await asyncio.gather(*(self.query(config) for config in requests)))

    async def batch_query(self, requests: List[RequestConfig]) -> List[Tuple[RequestConfig, ApiResponse]]:
        """
        Prioritize requests, run them concurrently and pair each response
        with its config, in priority order.
        """
        ordered = self._optimizer.prioritize_requests(requests)
        responses = await asyncio.gather(*(self.query(config) for config in ordered))
        return list(zip(ordered, responses))

    # Health and metrics

    def get_metrics(self) -> ClientMetrics:
        optimizer_metrics = self._optimizer.get_metrics()
        requests = self._request_count
        return ClientMetrics(
            api_client_requests=requests,
            api_client_failures=self._failure_count,
            api_client_success_rate=(
                ((requests - self._failure_count) / requests) * 100 if requests > 0 else 100.0
            ),
            optimizer=optimizer_metrics,
            efficiency_score=efficiency_score(optimizer_metrics),
        )

    def reset_metrics(self) -> None:
        """Reset client counters (optimizer counters are left alone)."""
        self._request_count = 0
        self._failure_count = 0

    async def close(self) -> None:
        """Shut down the optimizer and close the backend if it has close()."""
        self._optimizer.cleanup()
        close = getattr(self._backend, "close", None)
        if callable(close):
            await _resolve(close())

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


def logging_interceptors() -> Tuple[RequestInterceptor, ResponseInterceptor]:
    """
    Interceptor pair that logs every operation and its outcome.

    Example:
        request_log, response_log = logging_interceptors()
        client.add_request_interceptor(request_log)
        client.add_response_interceptor(response_log)
    """
    def log_request(config: RequestConfig) -> RequestConfig:
        logger.info(f"{config.operation.value.upper()} {config.table}", **config.to_dict())
        return config

    def log_response(response: ApiResponse) -> ApiResponse:
        if response.error is not None:
            logger.error("API error", **response.error.to_dict())
        else:
            logger.info("API success", status=response.status, status_text=response.status_text)
        return response

    return (
        RequestInterceptor(on_request=log_request),
        ResponseInterceptor(on_response=log_response),
    )
