"""
In-memory tabular backend.

Keeps tables as lists of row dicts and implements every operation
variant, including the filter operators a RequestConfig can carry.
Useful for tests, demos and offline development.

Usage:
    backend = InMemoryBackend({"tasks": [{"id": 1, "title": "Write docs"}]})
    client = ApiClient(backend)
    response = await client.select("tasks", filters={"id": 1})
"""

import asyncio
import copy
import itertools
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from requestflow.backends.base import Backend
from requestflow.errors import ApiError
from requestflow.models import (
    ApiResponse,
    DeleteOp,
    InsertOp,
    OrderBy,
    RequestConfig,
    SelectOp,
    UpdateOp,
    UpsertOp,
)


Row = Dict[str, Any]


def _like_to_regex(pattern: str, ignore_case: bool) -> "re.Pattern[str]":
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("^" + "".join(parts) + "$", re.IGNORECASE if ignore_case else 0)


def _compare(value: Any, operator: str, expected: Any) -> bool:
    if operator == "eq":
        return value == expected
    if operator == "neq":
        return value != expected
    if operator == "is":
        return value is expected
    if operator == "in":
        return value in expected
    if operator in ("like", "ilike"):
        if value is None:
            return False
        return bool(_like_to_regex(str(expected), operator == "ilike").match(str(value)))
    if value is None or expected is None:
        return False
    try:
        if operator == "gt":
            return value > expected
        if operator == "gte":
            return value >= expected
        if operator == "lt":
            return value < expected
        if operator == "lte":
            return value <= expected
    except TypeError:
        return False
    raise ApiError.validation(operator, f"Unsupported filter operator: {operator}")


def matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    """Whether a row satisfies every filter."""
    for column, expected in filters.items():
        value = row.get(column)
        if isinstance(expected, Mapping):
            if not all(_compare(value, op, arg) for op, arg in expected.items()):
                return False
        elif isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _sort(rows: List[Row], order_by: Optional[OrderBy]) -> List[Row]:
    if order_by is None:
        return rows
    present = [r for r in rows if r.get(order_by.column) is not None]
    missing = [r for r in rows if r.get(order_by.column) is None]
    present.sort(key=lambda r: r[order_by.column], reverse=not order_by.ascending)
    # nulls last, like the usual SQL default for ascending order
    return present + missing


def _project(rows: Iterable[Row], columns: str) -> List[Row]:
    wanted = [c.strip() for c in (columns or "*").split(",") if c.strip()]
    if not wanted or "*" in wanted:
        return [dict(r) for r in rows]
    return [{c: r.get(c) for c in wanted} for r in rows]


class InMemoryBackend(Backend):
    """
    Dict-of-lists backend.

    Attributes:
        call_count: Number of execute() calls
        history: Configs passed to execute(), in call order
    """

    def __init__(
        self,
        tables: Optional[Dict[str, List[Row]]] = None,
        latency: float = 0.0,
        auto_id: bool = True,
    ):
        """
        Initialize the backend.

        Args:
            tables: Initial table contents (copied)
            latency: Seconds to sleep before each operation
            auto_id: Assign integer ids to inserted rows lacking one
        """
        self._tables: Dict[str, List[Row]] = copy.deepcopy(tables) if tables else {}
        self._latency = latency
        self._auto_id = auto_id
        self._ids = itertools.count(self._next_id_seed())
        self.call_count = 0
        self.history: List[RequestConfig] = []

    def _next_id_seed(self) -> int:
        ids = [
            r["id"] for rows in self._tables.values() for r in rows
            if isinstance(r.get("id"), int)
        ]
        return max(ids, default=0) + 1

    def table(self, name: str) -> List[Row]:
        """Copy of a table's rows."""
        return copy.deepcopy(self._tables.get(name, []))

    async def execute(self, config: RequestConfig) -> ApiResponse:
        self.call_count += 1
        self.history.append(config)
        if self._latency:
            await asyncio.sleep(self._latency)
        return await super().execute(config)

    async def select(self, op: SelectOp) -> ApiResponse:
        rows = [r for r in self._tables.get(op.table, []) if matches(r, op.filters)]
        count = len(rows)
        rows = _sort(rows, op.order_by)
        if op.range is not None:
            rows = rows[op.range.start:op.range.end + 1]
        if op.limit is not None:
            rows = rows[:op.limit]
        return ApiResponse.success(_project(rows, op.columns), count=count)

    async def insert(self, op: InsertOp) -> ApiResponse:
        table = self._tables.setdefault(op.table, [])
        inserted = []
        for row in op.rows:
            row = dict(row)
            if self._auto_id and row.get("id") is None:
                row["id"] = next(self._ids)
            table.append(row)
            inserted.append(dict(row))
        return ApiResponse.success(inserted, status=201, status_text="Created", count=len(inserted))

    async def update(self, op: UpdateOp) -> ApiResponse:
        if not op.filters:
            raise ApiError.validation("filters", "update requires at least one filter")
        updated = []
        for row in self._tables.get(op.table, []):
            if matches(row, op.filters):
                row.update(op.values)
                updated.append(dict(row))
        return ApiResponse.success(updated, count=len(updated))

    async def delete(self, op: DeleteOp) -> ApiResponse:
        if not op.filters:
            raise ApiError.validation("filters", "delete requires at least one filter")
        rows = self._tables.get(op.table, [])
        deleted = [dict(r) for r in rows if matches(r, op.filters)]
        self._tables[op.table] = [r for r in rows if not matches(r, op.filters)]
        return ApiResponse.success(deleted, count=len(deleted))

    async def upsert(self, op: UpsertOp) -> ApiResponse:
        table = self._tables.setdefault(op.table, [])
        written = []
        for row in op.rows:
            key = row.get(op.on_conflict)
            existing = None
            if key is not None:
                existing = next((r for r in table if r.get(op.on_conflict) == key), None)
            if existing is not None:
                existing.update(row)
                written.append(dict(existing))
                continue
            row = dict(row)
            if self._auto_id and op.on_conflict == "id" and key is None:
                row["id"] = next(self._ids)
            table.append(row)
            written.append(dict(row))
        return ApiResponse.success(written, status=201, status_text="Created", count=len(written))
