from __future__ import annotations

from collections.abc import Mapping, Sequence
from contextlib import asynccontextmanager
import copy
from datetime import datetime, timezone
import itertools
import threading
from typing import Any, AsyncIterator
from uuid import uuid4

from sqlalchemy import DateTime, Integer, MetaData, Table

from tenantguard.core.errors import UnknownEntityError
from tenantguard.domain.models import Base
from tenantguard.persistence.access import (
    Filter,
    OrderBy,
    RawHandler,
    Row,
    matches,
    sort_rows,
    validate_filter,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStore:
    """Process-local tables shared by every :class:`InMemoryDataAccess` handle.

    Rows are shaped by the SQLAlchemy metadata so that missing columns read as
    their defaults, exactly like rows coming back from Postgres. All mutation
    happens under a single re-entrant lock, which makes ``increment`` atomic.
    """

    def __init__(self, metadata: MetaData | None = None) -> None:
        self.metadata = metadata if metadata is not None else Base.metadata
        self.tables: dict[str, list[Row]] = {}
        self.lock = threading.RLock()
        self.raw_statements: list[tuple[str, dict[str, Any]]] = []
        self.raw_handler: RawHandler | None = None
        self._sequences: dict[str, itertools.count] = {}

    def table(self, entity: str) -> Table:
        table = self.metadata.tables.get(entity)
        if table is None:
            raise UnknownEntityError(f"unknown entity: {entity}")
        return table

    def prepare_row(self, entity: str, data: Mapping[str, Any]) -> Row:
        # Fill defaults the way the database would on insert.
        table = self.table(entity)
        row: Row = dict(data)
        for column in table.columns:
            if column.name in row:
                continue
            if column.primary_key and column.name == "id":
                row["id"] = self._next_id(entity, table)
            elif column.default is not None and getattr(column.default, "is_scalar", False):
                row[column.name] = column.default.arg
            elif column.server_default is not None and isinstance(column.type, DateTime):
                row[column.name] = _utc_now()
            else:
                row[column.name] = None
        return row

    def _next_id(self, entity: str, table: Table) -> Any:
        if isinstance(table.c["id"].type, Integer):
            sequence = self._sequences.setdefault(entity, itertools.count(1))
            return next(sequence)
        return str(uuid4())

    def seed(self, entity: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        # Synchronous insert helper for fixtures.
        with self.lock:
            prepared = [self.prepare_row(entity, row) for row in rows]
            self.tables.setdefault(entity, []).extend(prepared)
            return [dict(row) for row in prepared]

    def rows(self, entity: str) -> list[Row]:
        with self.lock:
            return [dict(row) for row in self.tables.get(entity, [])]


class InMemoryDataAccess:
    """Data-access adapter over an :class:`InMemoryStore`.

    Each handle models one connection: session variables live on the handle,
    and ``transaction()`` hands out a fresh handle whose variables start empty.
    """

    def __init__(self, store: InMemoryStore | None = None) -> None:
        self.store = store if store is not None else InMemoryStore()
        self.session_vars: dict[str, str] = {}
        # Session variables visible to each data operation, for inspection.
        self.observed_session_vars: list[dict[str, str]] = []

    def _observe(self) -> None:
        self.observed_session_vars.append(dict(self.session_vars))

    def _select(self, entity: str, where: Filter | None) -> list[Row]:
        validate_filter(where)
        self.store.table(entity)
        return [row for row in self.store.tables.get(entity, []) if matches(row, where)]

    async def find_one(self, entity: str, *, where: Filter | None = None) -> Row | None:
        rows = await self.find_many(entity, where=where, limit=1)
        return rows[0] if rows else None

    async def find_many(
        self,
        entity: str,
        *,
        where: Filter | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Row]:
        with self.store.lock:
            self._observe()
            rows = sort_rows(self._select(entity, where), order_by)
            start = offset or 0
            end = start + limit if limit is not None else None
            return [dict(row) for row in rows[start:end]]

    async def count(self, entity: str, *, where: Filter | None = None) -> int:
        with self.store.lock:
            self._observe()
            return len(self._select(entity, where))

    async def aggregate(
        self,
        entity: str,
        *,
        where: Filter | None = None,
        sum_fields: Sequence[str] = (),
        min_fields: Sequence[str] = (),
        max_fields: Sequence[str] = (),
    ) -> dict[str, Any]:
        with self.store.lock:
            self._observe()
            rows = self._select(entity, where)
        result: dict[str, Any] = {"count": len(rows), "sum": {}, "min": {}, "max": {}}
        for field in sum_fields:
            values = [row[field] for row in rows if row.get(field) is not None]
            result["sum"][field] = sum(values) if values else None
        for field in min_fields:
            values = [row[field] for row in rows if row.get(field) is not None]
            result["min"][field] = min(values) if values else None
        for field in max_fields:
            values = [row[field] for row in rows if row.get(field) is not None]
            result["max"][field] = max(values) if values else None
        return result

    async def create(self, entity: str, data: Mapping[str, Any]) -> Row:
        created = await self.create_many(entity, [data])
        return created[0]

    async def create_many(self, entity: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        with self.store.lock:
            self._observe()
            table = self.store.table(entity)
            existing = self.store.tables.setdefault(entity, [])
            pk_columns = [column.name for column in table.primary_key.columns]
            prepared = [self.store.prepare_row(entity, row) for row in rows]
            seen = {tuple(row.get(name) for name in pk_columns) for row in existing}
            for row in prepared:
                key = tuple(row.get(name) for name in pk_columns)
                if key in seen:
                    raise ValueError(f"duplicate primary key for {entity}: {key}")
                seen.add(key)
            existing.extend(prepared)
            return [dict(row) for row in prepared]

    async def update(self, entity: str, *, where: Filter, data: Mapping[str, Any]) -> list[Row]:
        with self.store.lock:
            self._observe()
            table = self.store.table(entity)
            updated = []
            for row in self._select(entity, where):
                row.update(data)
                if "updated_at" in table.c and "updated_at" not in data:
                    row["updated_at"] = _utc_now()
                updated.append(dict(row))
            return updated

    async def delete(self, entity: str, *, where: Filter) -> list[Row]:
        with self.store.lock:
            self._observe()
            doomed = self._select(entity, where)
            doomed_ids = {id(row) for row in doomed}
            self.store.tables[entity] = [
                row for row in self.store.tables.get(entity, []) if id(row) not in doomed_ids
            ]
            return [dict(row) for row in doomed]

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
        with self.store.lock:
            self._observe()
            matched = self._select(entity, dict(key))
            current = (matched[0].get(field) or 0) if matched else 0
            if ceiling is not None and current + amount > ceiling:
                return None
            if matched:
                row = matched[0]
                row[field] = current + amount
                if "updated_at" in self.store.table(entity).c:
                    row["updated_at"] = _utc_now()
                return dict(row)
            row = self.store.prepare_row(entity, {**(defaults or {}), **key, field: amount})
            self.store.tables.setdefault(entity, []).append(row)
            return dict(row)

    async def raw(self, sql: str, params: Mapping[str, Any] | None = None) -> list[Row]:
        bound = dict(params or {})
        with self.store.lock:
            self._observe()
            self.store.raw_statements.append((sql, bound))
            handler = self.store.raw_handler
        if handler is None:
            return []
        return [dict(row) for row in handler(sql, bound)]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryDataAccess"]:
        # Snapshot-based rollback; concurrent writers outside the transaction are
        # overwritten on rollback, which is acceptable for a single-process store.
        with self.store.lock:
            snapshot = copy.deepcopy(self.store.tables)
        handle = InMemoryDataAccess(self.store)
        try:
            yield handle
        except BaseException:
            with self.store.lock:
                self.store.tables = snapshot
            raise
        finally:
            self.observed_session_vars.extend(handle.observed_session_vars)

    async def set_session_vars(self, values: Mapping[str, str]) -> None:
        self.session_vars.update({name: str(value) for name, value in values.items()})

    async def reset_session_vars(self, names: Sequence[str]) -> None:
        for name in names:
            self.session_vars.pop(name, None)
