"""
Tests for ApiClient.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock

from requestflow.backends import InMemoryBackend
from requestflow.client import (
    ApiClient,
    RequestInterceptor,
    ResponseInterceptor,
    efficiency_score,
    logging_interceptors,
)
from requestflow.errors import ApiError, ErrorType, SHUTDOWN_CODE
from requestflow.models import ApiResponse, Operation, RequestConfig
from requestflow.optimizer import OptimizerConfig, OptimizerMetrics, RequestOptimizer
from requestflow.testing import MockExecutor


@pytest.fixture
def optimizer(make_optimizer):
    return make_optimizer(batch_timeout_ms=1)


@pytest.fixture
def client(tasks_backend, optimizer):
    return ApiClient(tasks_backend, optimizer=optimizer)


class TestVerbs:
    """CRUD verbs over the in-memory backend."""

    @pytest.mark.asyncio
    async def test_select(self, client):
        response = await client.select("tasks", filters={"done": False}, order_by="id")
        assert [r["id"] for r in response.data] == [1, 3]

    @pytest.mark.asyncio
    async def test_select_single(self, client):
        response = await client.select_single("tasks", filters={"id": 2})
        assert response.data["title"] == "Fix login"

    @pytest.mark.asyncio
    async def test_select_single_no_match(self, client):
        response = await client.select_single("tasks", filters={"id": 404})
        assert response.ok
        assert response.data is None

    @pytest.mark.asyncio
    async def test_concurrent_select_single_share_one_call(self, make_optimizer):
        backend = InMemoryBackend({"tasks": [{"id": 1, "title": "a"}]}, latency=0.01)
        client = ApiClient(backend, make_optimizer(batching_enabled=False))

        first, second = await asyncio.gather(
            client.select_single("tasks", filters={"id": 1}),
            client.select_single("tasks", filters={"id": 1}),
        )

        assert first.data == {"id": 1, "title": "a"}
        assert second.data == {"id": 1, "title": "a"}
        assert backend.call_count == 1

    @pytest.mark.asyncio
    async def test_select_keeps_rows_next_to_select_single(self, make_optimizer):
        backend = InMemoryBackend({"tasks": [{"id": 1, "title": "a"}]}, latency=0.01)
        client = ApiClient(backend, make_optimizer(batching_enabled=False))

        rows, single = await asyncio.gather(
            client.select("tasks"),
            client.select_single("tasks"),
        )

        assert rows.data == [{"id": 1, "title": "a"}]
        assert single.data == {"id": 1, "title": "a"}
        assert backend.call_count == 1

    @pytest.mark.asyncio
    async def test_response_interceptor_edits_stay_per_caller(self, make_optimizer):
        client = ApiClient(MockExecutor(data=[{"id": 1}], delay=0.01), make_optimizer(batching_enabled=False))
        tagged = []

        def tag_once(response):
            if not tagged:
                tagged.append(response)
                response.count = 99
            return response

        client.add_response_interceptor(on_response=tag_once)

        first, second = await asyncio.gather(client.select("tasks"), client.select("tasks"))

        assert {first.count, second.count} == {99, None}

    @pytest.mark.asyncio
    async def test_insert_update_delete(self, client, tasks_backend):
        created = await client.insert("tasks", {"title": "New", "done": False})
        new_id = created.data[0]["id"]

        updated = await client.update("tasks", {"done": True}, filters={"id": new_id})
        assert updated.data[0]["done"] is True

        deleted = await client.delete("tasks", filters={"id": new_id})
        assert deleted.data[0]["id"] == new_id
        assert new_id not in [r["id"] for r in tasks_backend.table("tasks")]

    @pytest.mark.asyncio
    async def test_upsert(self, client, tasks_backend):
        await client.upsert("tasks", [{"id": 2, "done": False}])
        row = next(r for r in tasks_backend.table("tasks") if r["id"] == 2)
        assert row["done"] is False

    @pytest.mark.asyncio
    async def test_invalid_request_comes_back_as_error(self, client, tasks_backend):
        response = await client.insert("tasks", None)

        assert response.error.type == ErrorType.VALIDATION
        assert tasks_backend.call_count == 0
        assert client.get_metrics().api_client_failures == 1

    @pytest.mark.asyncio
    async def test_query_never_raises(self, make_optimizer):
        optimizer = make_optimizer(batching_enabled=False)
        client = ApiClient(MockExecutor(responses=[ApiError.from_http_status(503)]), optimizer)

        response = await client.query(RequestConfig(table="tasks"))

        assert response.error.type == ErrorType.SERVER
        assert response.status == 503

    @pytest.mark.asyncio
    async def test_priority_query(self, client):
        response = await client.priority_query(RequestConfig(table="projects"), priority=1)
        assert response.data == [{"id": 10, "name": "Core"}]

    @pytest.mark.asyncio
    async def test_batch_keeps_input_order(self, client):
        responses = await client.batch([
            RequestConfig(table="tasks", operation=Operation.INSERT, params={"title": "x"}),
            RequestConfig(table="projects"),
        ])
        assert responses[0].status == 201
        assert responses[1].data == [{"id": 10, "name": "Core"}]

    @pytest.mark.asyncio
    async def test_batch_query_orders_by_priority(self, client):
        write = RequestConfig(table="tasks", operation=Operation.INSERT, params={"title": "x"})
        read = RequestConfig(table="projects")

        results = await client.batch_query([write, read])

        assert [config for config, _ in results] == [read, write]
        assert all(response.ok for _, response in results)

    @pytest.mark.asyncio
    async def test_accepts_plain_coroutine_function(self, make_optimizer):
        executor = AsyncMock(return_value=ApiResponse.success([{"id": 1}]))
        client = ApiClient(executor, make_optimizer(batching_enabled=False))

        response = await client.select("anything")

        assert response.data == [{"id": 1}]
        executor.assert_awaited_once()


class TestRequestInterceptors:
    """Request interceptors run in registration order."""

    @pytest.mark.asyncio
    async def test_transform_in_order(self, client, tasks_backend):
        seen = []

        def only_open(config):
            seen.append("first")
            return RequestConfig(table=config.table, filters={"done": False})

        async def newest_first(config):
            seen.append("second")
            return RequestConfig(table=config.table, filters=config.filters, order_by="id")

        client.add_request_interceptor(on_request=only_open)
        client.add_request_interceptor(on_request=newest_first)

        response = await client.select("tasks")

        assert seen == ["first", "second"]
        assert [r["id"] for r in response.data] == [1, 3]

    @pytest.mark.asyncio
    async def test_none_keeps_config(self, client):
        client.add_request_interceptor(on_request=lambda config: None)
        response = await client.select("projects")
        assert response.ok

    @pytest.mark.asyncio
    async def test_rejection_aborts_pipeline(self, client, tasks_backend):
        notified = []
        later = MagicMock()

        def deny(config):
            raise PermissionError("tenant mismatch")

        client.add_request_interceptor(on_request=deny, on_request_error=notified.append)
        client.add_request_interceptor(on_request=later)

        response = await client.select("tasks")

        assert response.error is not None
        assert response.error.type == ErrorType.UNKNOWN
        assert response.error.message == "tenant mismatch"
        assert notified == [response.error]
        later.assert_not_called()
        assert tasks_backend.call_count == 0

    @pytest.mark.asyncio
    async def test_rejection_with_api_error(self, client):
        client.add_request_interceptor(
            on_request=AsyncMock(side_effect=ApiError.auth("Session expired")),
        )

        response = await client.select("tasks")

        assert response.error.type == ErrorType.AUTH
        assert response.status == 500

    @pytest.mark.asyncio
    async def test_remove_interceptor(self, client, tasks_backend):
        interceptor = client.add_request_interceptor(
            RequestInterceptor(on_request=MagicMock(side_effect=RuntimeError("no"))),
        )
        client.remove_interceptor(interceptor)

        response = await client.select("projects")
        assert response.ok


class TestResponseInterceptors:
    """Response interceptors see every response."""

    @pytest.mark.asyncio
    async def test_transform_response(self, client):
        def count_rows(response):
            response.count = len(response.data)
            return response

        client.add_response_interceptor(on_response=count_rows)

        response = await client.select("tasks", filters={"done": True})
        assert response.count == 1

    @pytest.mark.asyncio
    async def test_translate_error(self, make_optimizer):
        client = ApiClient(
            MockExecutor(responses=[ApiError.from_http_status(404)]),
            make_optimizer(batching_enabled=False),
        )

        def friendly(error):
            if error.type == ErrorType.NOT_FOUND:
                return ApiError.validation("id", "No such task")
            return None

        client.add_response_interceptor(on_response_error=friendly)

        response = await client.select("tasks", filters={"id": 9})

        assert response.error.type == ErrorType.VALIDATION
        assert response.error.field == "id"

    @pytest.mark.asyncio
    async def test_error_handler_not_called_on_success(self, client):
        on_error = MagicMock()
        client.add_response_interceptor(on_response_error=on_error)

        await client.select("projects")

        on_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_raising_interceptor_yields_error_response(self, client):
        def broken(response):
            raise RuntimeError("formatter crashed")

        later = MagicMock()
        client.add_response_interceptor(on_response=broken)
        client.add_response_interceptor(on_response=later)

        response = await client.select("projects")

        assert response.error.message == "formatter crashed"
        later.assert_not_called()
        assert client.get_metrics().api_client_failures == 1


class TestMetrics:
    """Client counters and the efficiency score."""

    @pytest.mark.asyncio
    async def test_counts_requests_and_failures(self, client):
        await client.select("projects")
        await client.insert("tasks", None)

        metrics = client.get_metrics()
        assert metrics.api_client_requests == 2
        assert metrics.api_client_failures == 1
        assert metrics.api_client_success_rate == 50.0

    @pytest.mark.asyncio
    async def test_to_dict_flattens_optimizer_metrics(self, client):
        await client.select("projects")
        data = client.get_metrics().to_dict()
        assert data["api_client_requests"] == 1
        assert data["total_requests"] == 1
        assert "efficiency_score" in data

    @pytest.mark.asyncio
    async def test_reset(self, client):
        await client.select("projects")
        client.reset_metrics()
        assert client.get_metrics().api_client_requests == 0

    @pytest.mark.asyncio
    async def test_dedup_raises_score(self, make_optimizer):
        client = ApiClient(MockExecutor(delay=0.01), make_optimizer(batching_enabled=False))

        await asyncio.gather(*(client.select("tasks") for _ in range(4)))

        metrics = client.get_metrics()
        assert metrics.optimizer.deduplicated_requests == 3
        assert metrics.efficiency_score == 100


@pytest.mark.unit
class TestEfficiencyScore:
    """Tests for efficiency_score()."""

    def test_no_traffic(self):
        assert efficiency_score(OptimizerMetrics()) == 100

    def test_failures_cost_double(self):
        metrics = OptimizerMetrics(total_requests=10, failed_requests=1)
        assert efficiency_score(metrics) == 80

    def test_retries_cost_half(self):
        metrics = OptimizerMetrics(total_requests=10, retried_requests=4)
        assert efficiency_score(metrics) == 80

    def test_rewards_are_clamped(self):
        metrics = OptimizerMetrics(
            total_requests=10,
            deduplication_rate=50.0,
            batching_rate=100.0,
        )
        assert efficiency_score(metrics) == 100

    def test_rewards_offset_failures(self):
        metrics = OptimizerMetrics(
            total_requests=10,
            failed_requests=2,
            deduplication_rate=20.0,
            batching_rate=50.0,
        )
        # 100 - 40 + 10 + 15
        assert efficiency_score(metrics) == 85

    def test_floor_is_zero(self):
        metrics = OptimizerMetrics(total_requests=2, failed_requests=2, retried_requests=2)
        assert efficiency_score(metrics) == 0


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_close_shuts_down_optimizer(self, tasks_backend):
        optimizer = RequestOptimizer(OptimizerConfig(batch_timeout_ms=10_000))
        client = ApiClient(tasks_backend, optimizer=optimizer)

        pending = asyncio.ensure_future(client.select("tasks"))
        await asyncio.sleep(0)
        await client.close()

        response = await pending
        assert response.error.code == SHUTDOWN_CODE
        assert optimizer.active_timers == 0

    @pytest.mark.asyncio
    async def test_context_manager_closes_backend(self, tasks_backend):
        tasks_backend.close = AsyncMock()

        async with ApiClient(tasks_backend) as client:
            await client.select("projects")

        tasks_backend.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_logging_interceptors(client):
    request_log, response_log = logging_interceptors()
    client.add_request_interceptor(request_log)
    client.add_response_interceptor(response_log)

    ok = await client.select("projects")
    failed = await client.update("tasks", {"done": True})

    assert ok.ok
    assert failed.error.type == ErrorType.VALIDATION
    assert isinstance(request_log, RequestInterceptor)
    assert isinstance(response_log, ResponseInterceptor)
