"""
Request optimizer.

Wraps an arbitrary async executor with:
- Deduplication of identical in-flight reads
- Batching of same-table reads into one dispatch wave
- Classified retry with backoff, guarded by a circuit breaker
- A bounded-concurrency priority queue

All state (pending map, batches, queue, breakers, counters) belongs to one
optimizer instance and is only touched from the event loop thread. Every
check-then-register on that state happens inside a single synchronous turn.

Usage:
    optimizer = RequestOptimizer(OptimizerConfig(batch_size=5))

    response = await optimizer.optimize_request(config, backend.execute)
    urgent = await optimizer.queue_request(config, backend.execute, priority=1)

    optimizer.cleanup()
"""

import asyncio
import functools
import heapq
import itertools
import time
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from requestflow.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerState,
)
from requestflow.errors import (
    ApiError,
    CIRCUIT_OPEN_CODE,
    ErrorClassifier,
    ErrorType,
    SHUTDOWN_CODE,
)
from requestflow.models import ApiResponse, Operation, RequestConfig
from requestflow.observability import get_logger
from requestflow.retry import BackoffPolicy, RetryConfig


logger = get_logger(__name__)


Executor = Callable[[RequestConfig], Awaitable[ApiResponse]]

DEFAULT_PRIORITY = 5

OPERATION_RANK = {
    Operation.SELECT: 1,
    Operation.INSERT: 2,
    Operation.UPDATE: 3,
    Operation.DELETE: 4,
    Operation.UPSERT: 5,
}


def _is_cacheable_read(config: RequestConfig) -> bool:
    return config.operation == Operation.SELECT and not config.skip_cache


@dataclass
class OptimizerConfig:
    """
    Configuration for RequestOptimizer.

    Attributes:
        deduplication_enabled: Share in-flight identical reads
        deduplication_ttl_ms: Age after which an in-flight entry is not joined
        batching_enabled: Group same-table reads
        batch_size: Members that trigger an immediate flush
        batch_timeout_ms: Time after a batch opens before it flushes
        retry_enabled: Retry classified retryable failures
        retry: Retry/backoff settings
        circuit_breaker_enabled: Guard executor calls with a breaker
        circuit_breaker: Breaker settings
        max_concurrent_requests: In-flight limit for queued requests
        table_importance: Table rank used by prioritize_requests (lower first)
        cache_key_generator: Override for the deduplication key
        should_deduplicate: Override for the deduplication predicate
        should_batch: Override for the batching predicate
        circuit_breaker_key: Maps a request to its breaker (one global by default)
    """

    deduplication_enabled: bool = True
    deduplication_ttl_ms: float = 5000.0

    batching_enabled: bool = True
    batch_size: int = 10
    batch_timeout_ms: float = 50.0

    retry_enabled: bool = True
    retry: RetryConfig = field(default_factory=RetryConfig)

    circuit_breaker_enabled: bool = True
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    max_concurrent_requests: int = 6
    table_importance: Dict[str, int] = field(default_factory=dict)

    cache_key_generator: Optional[Callable[[RequestConfig], str]] = None
    should_deduplicate: Optional[Callable[[RequestConfig], bool]] = None
    should_batch: Optional[Callable[[RequestConfig], bool]] = None
    circuit_breaker_key: Optional[Callable[[RequestConfig], str]] = None

    def __post_init__(self):
        if self.deduplication_ttl_ms < 0:
            raise ValueError("deduplication_ttl_ms must be non-negative")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.batch_timeout_ms < 0:
            raise ValueError("batch_timeout_ms must be non-negative")
        if self.max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be at least 1")

    @property
    def max_retries(self) -> int:
        return self.retry.max_retries

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptimizerConfig":
        """Create from a plain dictionary (e.g. parsed settings)."""
        data = dict(data)
        if isinstance(data.get("retry"), dict):
            data["retry"] = RetryConfig(**data["retry"])
        if isinstance(data.get("circuit_breaker"), dict):
            data["circuit_breaker"] = CircuitBreakerConfig(**data["circuit_breaker"])
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown optimizer settings: {', '.join(sorted(unknown))}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable settings (callable hooks are omitted)."""
        return {
            "deduplication_enabled": self.deduplication_enabled,
            "deduplication_ttl_ms": self.deduplication_ttl_ms,
            "batching_enabled": self.batching_enabled,
            "batch_size": self.batch_size,
            "batch_timeout_ms": self.batch_timeout_ms,
            "retry_enabled": self.retry_enabled,
            "retry": asdict(self.retry),
            "circuit_breaker_enabled": self.circuit_breaker_enabled,
            "circuit_breaker": asdict(self.circuit_breaker),
            "max_concurrent_requests": self.max_concurrent_requests,
            "table_importance": dict(self.table_importance),
        }


@dataclass
class PendingRequest:
    """In-flight request that identical requests can join."""

    future: asyncio.Future
    timestamp: float  # ms
    config: RequestConfig
    task: Optional[asyncio.Task] = None


@dataclass
class BatchMember:
    config: RequestConfig
    executor: Executor
    future: asyncio.Future
    timestamp: float


@dataclass
class RequestBatch:
    """Open batch for one table:operation key."""

    key: str
    members: List[BatchMember] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None


@dataclass(order=True)
class QueueEntry:
    """Priority queue entry, ordered by (priority, arrival)."""

    priority: float
    sequence: int
    config: RequestConfig = field(compare=False)
    executor: Executor = field(compare=False)
    future: asyncio.Future = field(compare=False)
    timestamp: float = field(compare=False, default=0.0)


@dataclass
class OptimizerMetrics:
    """Optimizer counters and derived rates."""

    total_requests: int = 0
    deduplicated_requests: int = 0
    batched_requests: int = 0
    retried_requests: int = 0
    failed_requests: int = 0

    success_rate: float = 100.0
    deduplication_rate: float = 0.0
    batching_rate: float = 0.0
    retry_rate: float = 0.0

    concurrent_requests: int = 0
    queue_length: int = 0
    pending_deduplication: int = 0
    active_batches: int = 0
    active_timers: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _Counters:
    total: int = 0
    deduplicated: int = 0
    batched: int = 0
    retried: int = 0
    failed: int = 0


def _retrieve(future: asyncio.Future) -> None:
    # Marks the exception as retrieved when nobody is left awaiting it.
    if not future.cancelled():
        future.exception()


def _reject(future: asyncio.Future, error: ApiError) -> None:
    if not future.done():
        future.set_exception(error)


def as_executor(executor: Union[Executor, Any]) -> Executor:
    """Accept a bare coroutine function or a backend exposing execute()."""
    if callable(executor):
        return executor
    execute = getattr(executor, "execute", None)
    if execute is None or not callable(execute):
        raise TypeError(f"Executor must be callable, got {type(executor).__name__}")
    return execute


class RequestOptimizer:
    """
    Deduplicating, batching, retrying executor wrapper.

    Example:
        async with RequestOptimizer() as optimizer:
            results = await asyncio.gather(
                optimizer.optimize_request(config, executor),
                optimizer.optimize_request(config, executor),
            )
            # executor ran once, both callers got the same response
    """

    def __init__(
        self,
        config: Optional[OptimizerConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
        backoff: Optional[BackoffPolicy] = None,
        time_fn: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize RequestOptimizer.

        Args:
            config: Optimizer configuration
            classifier: Error classifier (always-online by default)
            backoff: Backoff policy (built from config.retry by default)
            time_fn: Monotonic clock in seconds
            sleep: Coroutine used to wait between retries
        """
        self._config = config or OptimizerConfig()
        self._classifier = classifier or ErrorClassifier()
        self._backoff = backoff or BackoffPolicy(self._config.retry)
        self._time = time_fn
        self._sleep = sleep

        self._pending: Dict[str, PendingRequest] = {}
        self._batches: Dict[str, RequestBatch] = {}
        self._queue: List[QueueEntry] = []
        self._queue_handle: Optional[asyncio.Handle] = None
        self._sequence = itertools.count()
        self._concurrent = 0
        self._tasks: Dict[asyncio.Task, Optional[asyncio.Future]] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._counters = _Counters()

        logger.debug(
            "RequestOptimizer initialized",
            dedup=self._config.deduplication_enabled,
            batching=self._config.batching_enabled,
            retry=self._config.retry_enabled,
        )

    # Configuration

    @property
    def config(self) -> OptimizerConfig:
        return self._config

    def update_config(self, **changes: Any) -> OptimizerConfig:
        """
        Replace configuration values.

        Returns:
            The new configuration
        """
        self._config = replace(self._config, **changes)
        if "retry" in changes:
            self._backoff = BackoffPolicy(self._config.retry)
        if "circuit_breaker" in changes:
            for breaker in self._breakers.values():
                breaker.config = self._config.circuit_breaker
        return self._config

    # Public entry points

    async def optimize_request(
        self,
        config: RequestConfig,
        executor: Union[Executor, Any],
    ) -> ApiResponse:
        """
        Run a request through deduplication, batching and retry.

        Args:
            config: Request to execute
            executor: Coroutine function (or backend) performing the call

        Returns:
            The executor's response

        Raises:
            ApiError: Classified failure after retries are exhausted
        """
        executor = as_executor(executor)
        self._counters.total += 1

        try:
            if self._config.deduplication_enabled and self._should_deduplicate(config):
                return await self._deduplicate(config, executor)
            return await self._dispatch(config, executor)
        except Exception as exc:
            self._counters.failed += 1
            error = self._classifier.classify(exc)
            if error is exc:
                raise
            raise error from exc

    async def queue_request(
        self,
        config: RequestConfig,
        executor: Union[Executor, Any],
        priority: float = DEFAULT_PRIORITY,
    ) -> ApiResponse:
        """
        Submit a request to the priority queue.

        Lower priority values are dispatched first, FIFO among equals.
        At most max_concurrent_requests queued requests run at once.
        """
        executor = as_executor(executor)
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        future.add_done_callback(_retrieve)

        heapq.heappush(self._queue, QueueEntry(
            priority=priority,
            sequence=next(self._sequence),
            config=config,
            executor=executor,
            future=future,
            timestamp=self._now_ms(),
        ))
        self._schedule_queue(loop)

        return await asyncio.shield(future)

    def prioritize_requests(self, requests: List[RequestConfig]) -> List[RequestConfig]:
        """
        Order requests: reads first, cacheable before skip_cache, then by
        table importance. Stable for equal keys.
        """
        importance = self._config.table_importance
        return sorted(
            requests,
            key=lambda c: (
                OPERATION_RANK.get(c.operation, 99),
                c.skip_cache,
                importance.get(c.table, 99),
            ),
        )

    # Deduplication

    def _cache_key(self, config: RequestConfig) -> str:
        if self._config.cache_key_generator:
            return self._config.cache_key_generator(config)
        return config.dedup_key()

    def _should_deduplicate(self, config: RequestConfig) -> bool:
        if self._config.should_deduplicate:
            return self._config.should_deduplicate(config)
        return _is_cacheable_read(config)

    async def _deduplicate(self, config: RequestConfig, executor: Executor) -> ApiResponse:
        key = self._cache_key(config)
        ttl = config.cache_ttl_ms if config.cache_ttl_ms is not None else self._config.deduplication_ttl_ms
        now = self._now_ms()

        existing = self._pending.get(key)
        if existing is not None and not existing.future.done() and now - existing.timestamp < ttl:
            self._counters.deduplicated += 1
            logger.debug(f"Deduplicated request for {config.batch_key}")
            return await asyncio.shield(existing.future)

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve)
        entry = PendingRequest(future=future, timestamp=now, config=config)
        self._pending[key] = entry

        entry.task = self._spawn(self._dispatch(config, executor), future)
        entry.task.add_done_callback(functools.partial(self._settle_pending, key, entry))

        return await asyncio.shield(future)

    def _settle_pending(self, key: str, entry: PendingRequest, task: asyncio.Task) -> None:
        # A newer entry may have replaced an expired one under the same key.
        if self._pending.get(key) is entry:
            del self._pending[key]
        self._settle(entry.future, task)

    # Batching

    def _should_batch(self, config: RequestConfig) -> bool:
        if self._config.should_batch:
            return self._config.should_batch(config)
        return _is_cacheable_read(config)

    async def _dispatch(self, config: RequestConfig, executor: Executor) -> ApiResponse:
        if self._config.batching_enabled and self._should_batch(config):
            return await self._add_to_batch(config, executor)
        return await self._execute(config, executor)

    async def _add_to_batch(self, config: RequestConfig, executor: Executor) -> ApiResponse:
        loop = asyncio.get_running_loop()
        key = config.batch_key
        future = loop.create_future()
        future.add_done_callback(_retrieve)

        batch = self._batches.get(key)
        if batch is None:
            batch = RequestBatch(key=key)
            batch.timer = loop.call_later(
                self._config.batch_timeout_ms / 1000.0, self._flush_batch, key
            )
            self._batches[key] = batch

        batch.members.append(BatchMember(
            config=config,
            executor=executor,
            future=future,
            timestamp=self._now_ms(),
        ))

        if len(batch.members) >= self._config.batch_size:
            self._flush_batch(key)

        return await asyncio.shield(future)

    def _flush_batch(self, key: str) -> None:
        batch = self._batches.pop(key, None)
        if batch is None:
            return
        if batch.timer is not None:
            batch.timer.cancel()
        if not batch.members:
            return

        self._counters.batched += len(batch.members)
        logger.debug(f"Executing batch of {len(batch.members)} requests for {key}")

        for member in batch.members:
            task = self._spawn(self._execute(member.config, member.executor), member.future)
            task.add_done_callback(functools.partial(self._settle, member.future))

    # Retry + circuit breaker

    def _breaker_for(self, config: RequestConfig) -> CircuitBreaker:
        key_fn = self._config.circuit_breaker_key
        key = key_fn(config) if key_fn else "default"
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(self._config.circuit_breaker, name=key, time_fn=self._time)
            self._breakers[key] = breaker
        return breaker

    async def _execute(self, config: RequestConfig, executor: Executor) -> ApiResponse:
        breaker = self._breaker_for(config) if self._config.circuit_breaker_enabled else None
        if self._config.retry_enabled:
            max_attempts = config.retry_count or self._config.retry.max_retries
        else:
            max_attempts = 1

        attempt = 1
        while True:
            try:
                return await self._attempt(config, executor, breaker)
            except Exception as exc:
                error = self._classifier.classify(exc)
                if error.code == CIRCUIT_OPEN_CODE or not self._backoff.should_retry(
                    error, attempt, max_attempts
                ):
                    if error is exc:
                        raise
                    raise error from exc

                delay_ms = self._backoff.delay(error, attempt)
                self._counters.retried += 1
                logger.debug(
                    f"Retry {attempt} for {config.batch_key}: {error.message}",
                    delay_ms=round(delay_ms, 1),
                )
                await self._sleep(delay_ms / 1000.0)
                attempt += 1

    async def _attempt(
        self,
        config: RequestConfig,
        executor: Executor,
        breaker: Optional[CircuitBreaker],
    ) -> ApiResponse:
        if breaker is None:
            return await self._call_with_timeout(config, executor)

        breaker.before_call()
        try:
            response = await self._call_with_timeout(config, executor)
        except Exception:
            breaker.record_failure()
            raise
        except BaseException:
            breaker.release_trial()
            raise
        breaker.record_success()
        return response

    async def _call_with_timeout(self, config: RequestConfig, executor: Executor) -> ApiResponse:
        if not config.timeout_ms:
            return await executor(config)

        # The call keeps running after a timeout; only its result is dropped.
        call = asyncio.ensure_future(executor(config))
        try:
            return await asyncio.wait_for(asyncio.shield(call), config.timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            call.add_done_callback(_retrieve)
            raise ApiError.timeout(config.timeout_ms) from None

    # Priority queue

    def _schedule_queue(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        if self._queue_handle is not None or not self._queue:
            return
        loop = loop or asyncio.get_running_loop()
        self._queue_handle = loop.call_soon(self._process_queue)

    def _process_queue(self) -> None:
        self._queue_handle = None
        while self._queue and self._concurrent < self._config.max_concurrent_requests:
            entry = heapq.heappop(self._queue)
            if entry.future.done():
                continue
            self._concurrent += 1
            logger.debug(f"Dispatching queued {entry.config.batch_key} (priority={entry.priority})")
            task = self._spawn(self.optimize_request(entry.config, entry.executor), entry.future)
            task.add_done_callback(functools.partial(self._on_queued_done, entry))

    def _on_queued_done(self, entry: QueueEntry, task: asyncio.Task) -> None:
        self._concurrent -= 1
        self._settle(entry.future, task)
        self._schedule_queue()

    # Task bookkeeping

    def _spawn(self, coro: Awaitable[ApiResponse], future: Optional[asyncio.Future]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks[task] = future
        task.add_done_callback(self._forget)
        return task

    def _forget(self, task: asyncio.Task) -> None:
        self._tasks.pop(task, None)

    def _settle(self, future: asyncio.Future, task: asyncio.Task) -> None:
        if future.done():
            return
        if task.cancelled():
            future.set_exception(self._shutdown_error())
            return
        exc = task.exception()
        if exc is not None:
            future.set_exception(self._classifier.classify(exc))
        else:
            future.set_result(task.result())

    # Metrics / lifecycle

    def _now_ms(self) -> float:
        return self._time() * 1000.0

    @property
    def active_timers(self) -> int:
        """Batch timers plus a scheduled queue run."""
        timers = sum(1 for b in self._batches.values() if b.timer is not None)
        return timers + (1 if self._queue_handle is not None else 0)

    def get_metrics(self) -> OptimizerMetrics:
        c = self._counters
        total = c.total

        def rate(n: int) -> float:
            return (n / total) * 100 if total > 0 else 0.0

        return OptimizerMetrics(
            total_requests=total,
            deduplicated_requests=c.deduplicated,
            batched_requests=c.batched,
            retried_requests=c.retried,
            failed_requests=c.failed,
            success_rate=((total - c.failed) / total) * 100 if total > 0 else 100.0,
            deduplication_rate=rate(c.deduplicated),
            batching_rate=rate(c.batched),
            retry_rate=rate(c.retried),
            concurrent_requests=self._concurrent,
            queue_length=len(self._queue),
            pending_deduplication=len(self._pending),
            active_batches=len(self._batches),
            active_timers=self.active_timers,
        )

    def reset_metrics(self) -> None:
        self._counters = _Counters()

    def circuit_breaker_states(self) -> Dict[str, CircuitBreakerState]:
        return {key: breaker.get_state() for key, breaker in self._breakers.items()}

    def get_circuit_breaker(self, key: str = "default") -> Optional[CircuitBreaker]:
        return self._breakers.get(key)

    def _shutdown_error(self) -> ApiError:
        return ApiError(
            ErrorType.UNKNOWN,
            "Request optimizer is shutting down",
            code=SHUTDOWN_CODE,
            retryable=False,
            context="RequestOptimizer.cleanup",
        )

    def cleanup(self) -> None:
        """
        Reject all pending, batched and queued work and cancel every timer.

        Synchronous: when it returns no timer owned by the optimizer is
        left to fire.
        """
        error = self._shutdown_error()
        rejected = 0

        for batch in self._batches.values():
            if batch.timer is not None:
                batch.timer.cancel()
            for member in batch.members:
                if not member.future.done():
                    rejected += 1
                _reject(member.future, error)
        self._batches.clear()

        if self._queue_handle is not None:
            self._queue_handle.cancel()
            self._queue_handle = None

        for entry in self._queue:
            if not entry.future.done():
                rejected += 1
            _reject(entry.future, error)
        self._queue.clear()

        for pending in self._pending.values():
            if not pending.future.done():
                rejected += 1
            _reject(pending.future, error)
        self._pending.clear()

        for task, future in list(self._tasks.items()):
            if future is not None:
                _reject(future, error)
            task.cancel()

        logger.debug(f"RequestOptimizer cleaned up ({rejected} requests rejected)")

    async def __aenter__(self) -> "RequestOptimizer":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.cleanup()
