"""
Base backend implementation.

A backend turns a RequestConfig into a concrete call against a tabular
store and returns an ApiResponse. Backends are what the optimizer calls
"executors": anywhere an executor is accepted, a backend works too.
"""

from abc import ABC, abstractmethod
from typing import Any

from requestflow.errors import ApiError
from requestflow.models import (
    ApiResponse,
    DeleteOp,
    InsertOp,
    OperationVariant,
    RequestConfig,
    SelectOp,
    UpdateOp,
    UpsertOp,
)


class Backend(ABC):
    """
    Abstract base class for backends.

    Subclasses implement one coroutine per operation variant; execute()
    narrows the config and dispatches. Failures a caller may want retried
    (connection resets, 5xx, rate limits) should be raised; final answers,
    including "no such row", are returned as responses.
    """

    @property
    def backend_name(self) -> str:
        """Return the backend name for error messages."""
        return self.__class__.__name__

    async def execute(self, config: RequestConfig) -> ApiResponse:
        """
        Execute a request.

        Args:
            config: Request to run

        Returns:
            ApiResponse with the rows affected or returned.
        """
        operation = config.to_operation()
        try:
            return await self.dispatch(operation)
        except ApiError as error:
            if error.is_retryable:
                raise
            return ApiResponse.failure(error)

    async def dispatch(self, operation: OperationVariant) -> ApiResponse:
        """Route a variant to its handler."""
        if isinstance(operation, SelectOp):
            return await self.select(operation)
        if isinstance(operation, InsertOp):
            return await self.insert(operation)
        if isinstance(operation, UpdateOp):
            return await self.update(operation)
        if isinstance(operation, DeleteOp):
            return await self.delete(operation)
        if isinstance(operation, UpsertOp):
            return await self.upsert(operation)
        raise TypeError(f"{self.backend_name} cannot handle {type(operation).__name__}")

    @abstractmethod
    async def select(self, op: SelectOp) -> ApiResponse:
        ...

    @abstractmethod
    async def insert(self, op: InsertOp) -> ApiResponse:
        ...

    @abstractmethod
    async def update(self, op: UpdateOp) -> ApiResponse:
        ...

    @abstractmethod
    async def delete(self, op: DeleteOp) -> ApiResponse:
        ...

    @abstractmethod
    async def upsert(self, op: UpsertOp) -> ApiResponse:
        ...

    async def __aenter__(self) -> "Backend":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def close(self) -> None:
        """Close any resources (override if needed)."""
        pass
