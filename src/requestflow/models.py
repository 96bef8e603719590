"""
Request and response data model.

RequestConfig describes one logical backend operation. It is frozen:
interceptors and callers derive modified copies with dataclasses.replace().
to_operation() narrows a config to the variant for its operation so
backends only ever see the fields that apply.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Generic, List, Mapping, Optional, TypeVar, Union

from requestflow.errors import ApiError


T = TypeVar("T")


class Operation(str, Enum):
    """Backend operation kinds."""

    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    UPSERT = "upsert"


# Comparison operators accepted inside a {column: {operator: value}} filter.
FILTER_OPERATORS = frozenset({
    "eq", "neq", "gt", "gte", "lt", "lte", "like", "ilike", "in", "is",
})


@dataclass(frozen=True)
class OrderBy:
    """Sort order for select results."""

    column: str
    ascending: bool = True


@dataclass(frozen=True)
class Range:
    """Inclusive pagination window (rows start..end)."""

    start: int
    end: int

    def __post_init__(self):
        if self.start < 0 or self.end < self.start:
            raise ApiError.validation("range", f"Invalid range {self.start}..{self.end}")


@dataclass(frozen=True)
class RequestConfig:
    """
    One logical backend operation.

    Attributes:
        table: Resource name
        operation: Operation kind
        params: Payload for insert/update/upsert
        filters: Column predicates (scalar = equality, list = membership,
            dict = {operator: value})
        order_by: Result ordering
        limit: Maximum rows
        range: Pagination window
        columns: Projection, comma separated
        cache_key: Explicit deduplication key
        cache_ttl_ms: Deduplication window override
        skip_cache: Bypass deduplication and batching
        retry_count: Number of attempts override
        timeout_ms: Per-attempt timeout
    """

    table: str
    operation: Operation = Operation.SELECT
    params: Optional[Any] = None
    filters: Optional[Dict[str, Any]] = None
    order_by: Optional[OrderBy] = None
    limit: Optional[int] = None
    range: Optional[Range] = None
    columns: str = "*"
    cache_key: Optional[str] = None
    cache_ttl_ms: Optional[float] = None
    skip_cache: bool = False
    retry_count: Optional[int] = None
    timeout_ms: Optional[float] = None

    def __post_init__(self):
        if not self.table:
            raise ApiError.validation("table", "table is required")
        object.__setattr__(self, "operation", Operation(self.operation))
        if isinstance(self.order_by, str):
            object.__setattr__(self, "order_by", OrderBy(self.order_by))
        if isinstance(self.range, (tuple, list)):
            object.__setattr__(self, "range", Range(*self.range))
        if self.limit is not None and self.limit < 0:
            raise ApiError.validation("limit", "limit must be non-negative")
        if self.timeout_ms is not None and self.timeout_ms <= 0:
            raise ApiError.validation("timeout_ms", "timeout_ms must be positive")
        if self.retry_count is not None and self.retry_count < 1:
            raise ApiError.validation("retry_count", "retry_count must be at least 1")
        if self.operation in (Operation.INSERT, Operation.UPSERT) and self.params is None:
            raise ApiError.validation("params", f"{self.operation.value} requires params")
        for column, value in (self.filters or {}).items():
            if isinstance(value, Mapping):
                unknown = set(value) - FILTER_OPERATORS
                if unknown:
                    raise ApiError.validation(
                        column, f"Unsupported filter operator(s): {', '.join(sorted(unknown))}"
                    )

    @property
    def batch_key(self) -> str:
        """Key of the batch this request joins."""
        return f"{self.table}:{self.operation.value}"

    def dedup_key(self) -> str:
        """Deterministic key identifying identical requests."""
        if self.cache_key:
            return self.cache_key
        return json.dumps(
            {
                "table": self.table,
                "operation": self.operation.value,
                "filters": self.filters,
                "params": self.params,
                "columns": self.columns,
            },
            sort_keys=True,
            default=str,
        )

    def to_operation(self) -> "OperationVariant":
        """Narrow to the variant for this operation."""
        if self.operation == Operation.SELECT:
            return SelectOp(
                table=self.table,
                columns=self.columns,
                filters=dict(self.filters or {}),
                order_by=self.order_by,
                limit=self.limit,
                range=self.range,
            )
        if self.operation == Operation.INSERT:
            return InsertOp(table=self.table, rows=_as_rows(self.params))
        if self.operation == Operation.UPDATE:
            return UpdateOp(
                table=self.table,
                values=dict(self.params or {}),
                filters=dict(self.filters or {}),
            )
        if self.operation == Operation.DELETE:
            return DeleteOp(table=self.table, filters=dict(self.filters or {}))
        if self.operation == Operation.UPSERT:
            return UpsertOp(table=self.table, rows=_as_rows(self.params))
        raise TypeError(f"Unhandled operation: {self.operation!r}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (for logging)."""
        return {
            "table": self.table,
            "operation": self.operation.value,
            "filters": self.filters,
            "columns": self.columns,
            "limit": self.limit,
            "skip_cache": self.skip_cache,
            "timeout_ms": self.timeout_ms,
        }


def _as_rows(params: Any) -> List[Dict[str, Any]]:
    if params is None:
        return []
    if isinstance(params, Mapping):
        return [dict(params)]
    return [dict(row) for row in params]


# Operation variants


@dataclass(frozen=True)
class SelectOp:
    table: str
    columns: str = "*"
    filters: Dict[str, Any] = field(default_factory=dict)
    order_by: Optional[OrderBy] = None
    limit: Optional[int] = None
    range: Optional[Range] = None


@dataclass(frozen=True)
class InsertOp:
    table: str
    rows: List[Dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class UpdateOp:
    table: str
    values: Dict[str, Any] = field(default_factory=dict)
    filters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeleteOp:
    table: str
    filters: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UpsertOp:
    table: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    on_conflict: str = "id"


OperationVariant = Union[SelectOp, InsertOp, UpdateOp, DeleteOp, UpsertOp]


@dataclass
class ApiResponse(Generic[T]):
    """
    Uniform result envelope.

    Exactly one of data/error is meaningful; both are always present.
    """

    data: Optional[T] = None
    error: Optional[ApiError] = None
    count: Optional[int] = None
    status: int = 200
    status_text: str = "OK"
    cached: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        """Whether the response carries data rather than an error."""
        return self.error is None

    @classmethod
    def success(
        cls,
        data: Optional[T],
        status: int = 200,
        status_text: str = "OK",
        count: Optional[int] = None,
        cached: bool = False,
    ) -> "ApiResponse[T]":
        return cls(data=data, status=status, status_text=status_text, count=count, cached=cached)

    @classmethod
    def failure(cls, error: ApiError) -> "ApiResponse[T]":
        status = error.code if isinstance(error.code, int) else 500
        status_text = {
            401: "Unauthorized",
            403: "Forbidden",
            404: "Not Found",
            429: "Too Many Requests",
        }.get(status, "Internal Server Error" if status >= 500 else "Error")
        return cls(data=None, error=error, status=status, status_text=status_text)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "data": self.data,
            "error": self.error.to_dict() if self.error else None,
            "count": self.count,
            "status": self.status,
            "status_text": self.status_text,
            "cached": self.cached,
            "timestamp": self.timestamp.isoformat(),
        }
