"""
FastAPI Server Example.

Serves tasks from an in-memory backend through an ApiClient and exposes
the health and metrics routes.

Usage:
    pip install requestflow[api] uvicorn
    uvicorn main:app --reload
"""

from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel

from requestflow import ApiClient, InMemoryBackend, LogConfig, LogFormat, configure_logging
from requestflow.api.routes import health_router, metrics_router


class TaskInput(BaseModel):
    """Input for creating a task."""
    title: str
    done: bool = False


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(LogConfig(format=LogFormat.JSON))
    backend = InMemoryBackend({"tasks": []})
    async with ApiClient(backend) as client:
        app.state.api_client = client
        yield


app = FastAPI(
    title="requestflow demo",
    description="Tasks API behind a request optimizer",
    version="1.0.0",
    lifespan=lifespan,
)
app.include_router(health_router)
app.include_router(metrics_router)


def _unwrap(response) -> Any:
    if response.error is not None:
        raise HTTPException(status_code=response.status, detail=response.error.to_dict())
    return response.data


@app.get("/tasks")
async def list_tasks(request: Request, done: Optional[bool] = None):
    filters = {"done": done} if done is not None else None
    return _unwrap(await request.app.state.api_client.select("tasks", filters=filters, order_by="id"))


@app.get("/tasks/{task_id}")
async def get_task(request: Request, task_id: int):
    task = _unwrap(await request.app.state.api_client.select_single("tasks", filters={"id": task_id}))
    if task is None:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return task


@app.post("/tasks", status_code=201)
async def create_task(request: Request, body: TaskInput):
    rows = _unwrap(await request.app.state.api_client.insert("tasks", body.model_dump()))
    return rows[0]
