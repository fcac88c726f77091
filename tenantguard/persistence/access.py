"""Narrow data-access interface shared by every storage adapter.

Filters are plain dicts so the isolation layer can inspect and rewrite them
without knowing which driver sits underneath:

* ``{"status": "open"}`` equality, ``{"deleted_at": None}`` IS NULL
* ``{"amount": {"gte": 10, "lt": 20}}`` operator maps
  (``in``, ``not_in``, ``ne``, ``gt``, ``gte``, ``lt``, ``lte``,
  ``contains``, ``is_null``)
* ``OR`` / ``AND`` (lists of filters) and ``NOT`` (a filter)

Top-level keys are ANDed together.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from contextlib import AbstractAsyncContextManager
from typing import Any, Callable, Protocol

from tenantguard.core.errors import InvalidFilterError


Row = dict[str, Any]
Filter = Mapping[str, Any]
OrderBy = Sequence[tuple[str, str]]

LOGICAL_KEYS = frozenset({"OR", "AND", "NOT"})
FILTER_OPERATORS = frozenset({"in", "not_in", "ne", "gt", "gte", "lt", "lte", "contains", "is_null"})


class DataAccess(Protocol):
    async def find_one(self, entity: str, *, where: Filter | None = None) -> Row | None: ...

    async def find_many(
        self,
        entity: str,
        *,
        where: Filter | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Row]: ...

    async def count(self, entity: str, *, where: Filter | None = None) -> int: ...

    async def aggregate(
        self,
        entity: str,
        *,
        where: Filter | None = None,
        sum_fields: Sequence[str] = (),
        min_fields: Sequence[str] = (),
        max_fields: Sequence[str] = (),
    ) -> dict[str, Any]: ...

    async def create(self, entity: str, data: Mapping[str, Any]) -> Row: ...

    async def create_many(self, entity: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]: ...

    async def update(self, entity: str, *, where: Filter, data: Mapping[str, Any]) -> list[Row]: ...

    async def delete(self, entity: str, *, where: Filter) -> list[Row]: ...

    async def increment(
        self,
        entity: str,
        *,
        key: Mapping[str, Any],
        field: str,
        amount: int,
        defaults: Mapping[str, Any] | None = None,
        ceiling: int | None = None,
    ) -> Row | None:
        # Atomic upsert; returns None and writes nothing when the result would exceed ``ceiling``.
        ...

    async def raw(self, sql: str, params: Mapping[str, Any] | None = None) -> list[Row]: ...

    def transaction(self) -> AbstractAsyncContextManager["DataAccess"]: ...

    async def set_session_vars(self, values: Mapping[str, str]) -> None: ...

    async def reset_session_vars(self, names: Sequence[str]) -> None: ...


def validate_filter(where: Any) -> None:
    # Reject malformed filters before they reach a driver.
    if where is None:
        return
    if not isinstance(where, Mapping):
        raise InvalidFilterError("filter must be a mapping")
    for key, value in where.items():
        if key in ("OR", "AND"):
            if not isinstance(value, (list, tuple)):
                raise InvalidFilterError(f"{key} expects a list of filters")
            for branch in value:
                if not isinstance(branch, Mapping):
                    raise InvalidFilterError(f"{key} branches must be mappings")
                validate_filter(branch)
        elif key == "NOT":
            if not isinstance(value, Mapping):
                raise InvalidFilterError("NOT expects a filter mapping")
            validate_filter(value)
        elif isinstance(value, Mapping):
            unknown = set(value) - FILTER_OPERATORS
            if unknown or not value:
                raise InvalidFilterError(f"unsupported filter operators for {key}: {sorted(unknown)}")
            for op in ("in", "not_in"):
                if op in value and not isinstance(value[op], (list, tuple, set, frozenset)):
                    raise InvalidFilterError(f"{op} expects a sequence for {key}")


def _apply_operator(actual: Any, op: str, arg: Any) -> bool:
    if op == "in":
        return actual in arg
    if op == "not_in":
        return actual not in arg
    if op == "ne":
        return actual != arg
    if op == "is_null":
        return (actual is None) == bool(arg)
    if op == "contains":
        return isinstance(actual, str) and str(arg) in actual
    if actual is None:
        return False
    if op == "gt":
        return actual > arg
    if op == "gte":
        return actual >= arg
    if op == "lt":
        return actual < arg
    if op == "lte":
        return actual <= arg
    raise InvalidFilterError(f"unsupported filter operator: {op}")


def _match_value(actual: Any, expected: Any) -> bool:
    if isinstance(expected, Mapping):
        return all(_apply_operator(actual, op, arg) for op, arg in expected.items())
    if expected is None:
        return actual is None
    return actual == expected


def matches(row: Mapping[str, Any], where: Filter | None) -> bool:
    """Evaluate a filter against a row using the same semantics as the SQL adapter."""
    if not where:
        return True
    for key, value in where.items():
        if key == "OR":
            if not any(matches(row, branch) for branch in value):
                return False
        elif key == "AND":
            if not all(matches(row, branch) for branch in value):
                return False
        elif key == "NOT":
            if matches(row, value):
                return False
        elif not _match_value(row.get(key), value):
            return False
    return True


def sort_rows(rows: list[Row], order_by: OrderBy | None) -> list[Row]:
    # NULLs sort as the largest value, matching Postgres defaults.
    ordered = list(rows)
    for column, direction in reversed(list(order_by or ())):
        descending = str(direction).lower() == "desc"
        present = [row for row in ordered if row.get(column) is not None]
        missing = [row for row in ordered if row.get(column) is None]
        present.sort(key=lambda row: row[column], reverse=descending)
        ordered = missing + present if descending else present + missing
    return ordered


RawHandler = Callable[[str, Mapping[str, Any]], list[Row]]
