"""
Quickstart.

Runs a burst of identical reads, a flaky backend and a priority queue
through one ApiClient and prints the resulting metrics.

Usage:
    python examples/quickstart/simple.py
"""

import asyncio

from requestflow import (
    ApiClient,
    InMemoryBackend,
    LogConfig,
    OptimizerConfig,
    RequestConfig,
    RequestOptimizer,
    configure_logging,
    logging_interceptors,
)
from requestflow.testing import FlakyExecutor


async def main():
    configure_logging(LogConfig(level="INFO"))

    backend = InMemoryBackend(
        {"tasks": [{"id": 1, "title": "Write docs", "done": False}]},
        latency=0.02,
    )
    optimizer = RequestOptimizer(OptimizerConfig(batch_timeout_ms=20))

    async with ApiClient(backend, optimizer=optimizer) as client:
        request_log, response_log = logging_interceptors()
        client.add_request_interceptor(request_log)
        client.add_response_interceptor(response_log)

        # Ten identical reads, one backend call
        await asyncio.gather(*(
            client.select("tasks", filters={"done": False}) for _ in range(10)
        ))
        print(f"Backend calls for 10 reads: {backend.call_count}")

        await client.insert("tasks", {"title": "Ship it", "done": False})

        # Lower priority value goes first
        urgent, routine = await asyncio.gather(
            client.priority_query(RequestConfig(table="tasks", filters={"id": 2}), priority=1),
            client.priority_query(RequestConfig(table="tasks", filters={"id": 1}), priority=9),
        )
        print(f"Urgent: {urgent.data}, routine: {routine.data}")

        metrics = client.get_metrics()
        print(f"Deduplication rate: {metrics.optimizer.deduplication_rate:.1f}%")
        print(f"Efficiency score: {metrics.efficiency_score}")

    # A backend that fails twice before answering
    flaky = FlakyExecutor(failures=2, data=[{"ok": True}])
    fast_retry = OptimizerConfig.from_dict({
        "batching_enabled": False,
        "retry": {"base_delay_ms": 50, "max_delay_ms": 500},
    })
    async with ApiClient(flaky, optimizer=RequestOptimizer(fast_retry)) as client:
        response = await client.select("status")
        print(f"Flaky backend answered {response.data} after {flaky.call_count} calls")


if __name__ == "__main__":
    asyncio.run(main())
