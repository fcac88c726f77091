from __future__ import annotations

from collections.abc import Mapping, Sequence
from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator

from sqlalchemy import (
    ColumnElement,
    MetaData,
    Table,
    and_,
    delete,
    false,
    func,
    insert,
    not_,
    or_,
    select,
    text,
    true,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from tenantguard.core.errors import InvalidFilterError, UnknownEntityError
from tenantguard.domain.models import Base
from tenantguard.persistence.access import Filter, OrderBy, Row, validate_filter


logger = logging.getLogger(__name__)


def _operator_clause(column, op: str, arg: Any) -> ColumnElement[bool]:
    # Mirror Python comparison semantics for NULLs so both adapters agree.
    if op == "in":
        return column.in_(list(arg))
    if op == "not_in":
        return or_(column.not_in(list(arg)), column.is_(None))
    if op == "ne":
        return column.is_distinct_from(arg)
    if op == "is_null":
        return column.is_(None) if arg else column.is_not(None)
    if op == "contains":
        return column.contains(str(arg), autoescape=True)
    if op == "gt":
        return column > arg
    if op == "gte":
        return column >= arg
    if op == "lt":
        return column < arg
    if op == "lte":
        return column <= arg
    raise InvalidFilterError(f"unsupported filter operator: {op}")


def build_filter_clause(table: Table, where: Filter | None) -> ColumnElement[bool]:
    """Compile a filter dict into a SQLAlchemy boolean clause for ``table``."""
    validate_filter(where)
    if not where:
        return true()
    clauses: list[ColumnElement[bool]] = []
    for key, value in where.items():
        if key == "OR":
            branches = [build_filter_clause(table, branch) for branch in value]
            clauses.append(or_(*branches) if branches else false())
        elif key == "AND":
            branches = [build_filter_clause(table, branch) for branch in value]
            clauses.append(and_(*branches) if branches else true())
        elif key == "NOT":
            clauses.append(not_(build_filter_clause(table, value)))
        else:
            if key not in table.c:
                raise InvalidFilterError(f"unknown column {key} for {table.name}")
            column = table.c[key]
            if isinstance(value, Mapping):
                clauses.append(and_(*[_operator_clause(column, op, arg) for op, arg in value.items()]))
            elif value is None:
                clauses.append(column.is_(None))
            else:
                clauses.append(column == value)
    return and_(*clauses)


class SqlAlchemyDataAccess:
    """Data-access adapter over an async SQLAlchemy session.

    Statements are built with SQLAlchemy Core against ``Base.metadata`` so
    entity names are validated against the schema rather than interpolated.
    Writes issued outside :meth:`transaction` commit immediately.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        metadata: MetaData | None = None,
        in_transaction: bool = False,
    ) -> None:
        self.session = session
        self.metadata = metadata if metadata is not None else Base.metadata
        self._in_transaction = in_transaction

    def _table(self, entity: str) -> Table:
        table = self.metadata.tables.get(entity)
        if table is None:
            raise UnknownEntityError(f"unknown entity: {entity}")
        return table

    def _dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    async def _write(self, stmt) -> list[Row]:
        result = await self.session.execute(stmt)
        rows = [dict(row) for row in result.mappings().all()]
        if not self._in_transaction:
            await self.session.commit()
        return rows

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
        table = self._table(entity)
        stmt = select(table).where(build_filter_clause(table, where))
        for column, direction in order_by or ():
            if column not in table.c:
                raise InvalidFilterError(f"unknown order column {column} for {entity}")
            col = table.c[column]
            stmt = stmt.order_by(col.desc() if str(direction).lower() == "desc" else col.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)
        result = await self.session.execute(stmt)
        return [dict(row) for row in result.mappings().all()]

    async def count(self, entity: str, *, where: Filter | None = None) -> int:
        table = self._table(entity)
        stmt = select(func.count()).select_from(table).where(build_filter_clause(table, where))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def aggregate(
        self,
        entity: str,
        *,
        where: Filter | None = None,
        sum_fields: Sequence[str] = (),
        min_fields: Sequence[str] = (),
        max_fields: Sequence[str] = (),
    ) -> dict[str, Any]:
        table = self._table(entity)
        columns = [func.count().label("count")]
        columns += [func.sum(table.c[name]).label(f"sum__{name}") for name in sum_fields]
        columns += [func.min(table.c[name]).label(f"min__{name}") for name in min_fields]
        columns += [func.max(table.c[name]).label(f"max__{name}") for name in max_fields]
        stmt = select(*columns).select_from(table).where(build_filter_clause(table, where))
        row = (await self.session.execute(stmt)).mappings().one()
        return {
            "count": int(row["count"]),
            "sum": {name: row[f"sum__{name}"] for name in sum_fields},
            "min": {name: row[f"min__{name}"] for name in min_fields},
            "max": {name: row[f"max__{name}"] for name in max_fields},
        }

    async def create(self, entity: str, data: Mapping[str, Any]) -> Row:
        table = self._table(entity)
        rows = await self._write(insert(table).values(**dict(data)).returning(*table.c))
        return rows[0]

    async def create_many(self, entity: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        if not rows:
            return []
        table = self._table(entity)
        return await self._write(insert(table).values([dict(row) for row in rows]).returning(*table.c))

    async def update(self, entity: str, *, where: Filter, data: Mapping[str, Any]) -> list[Row]:
        table = self._table(entity)
        stmt = (
            update(table)
            .where(build_filter_clause(table, where))
            .values(**dict(data))
            .returning(*table.c)
        )
        return await self._write(stmt)

    async def delete(self, entity: str, *, where: Filter) -> list[Row]:
        table = self._table(entity)
        stmt = delete(table).where(build_filter_clause(table, where)).returning(*table.c)
        return await self._write(stmt)

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
        # Single-statement upsert keeps concurrent increments from losing updates.
        if ceiling is not None and amount > ceiling:
            return None
        table = self._table(entity)
        stmt = pg_insert(table).values(**{**dict(defaults or {}), **dict(key), field: amount})
        set_values: dict[str, Any] = {field: table.c[field] + stmt.excluded[field]}
        if "updated_at" in table.c:
            set_values["updated_at"] = func.now()
        # The conflict branch is skipped, and nothing returned, when the cap would be crossed.
        cap = table.c[field] + stmt.excluded[field] <= ceiling if ceiling is not None else None
        stmt = stmt.on_conflict_do_update(index_elements=list(key), set_=set_values, where=cap).returning(*table.c)
        rows = await self._write(stmt)
        return rows[0] if rows else None

    async def raw(self, sql: str, params: Mapping[str, Any] | None = None) -> list[Row]:
        result = await self.session.execute(text(sql), dict(params or {}))
        rows = [dict(row) for row in result.mappings().all()] if result.returns_rows else []
        if not self._in_transaction:
            await self.session.commit()
        return rows

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqlAlchemyDataAccess"]:
        in_transaction = self.session.in_transaction()
        # Use a nested transaction when prior reads have already opened one.
        tx_context = self.session.begin_nested() if in_transaction else self.session.begin()
        async with tx_context:
            yield SqlAlchemyDataAccess(self.session, metadata=self.metadata, in_transaction=True)
        if in_transaction and not self._in_transaction:
            # Commit the outer transaction when we piggybacked on an autobegun one.
            await self.session.commit()

    async def set_session_vars(self, values: Mapping[str, str]) -> None:
        # Transaction-local settings so a pooled connection never carries a tenant past commit.
        if self._dialect_name() != "postgresql":
            logger.debug("session_vars_skipped dialect=%s", self._dialect_name())
            return
        for name, value in values.items():
            await self.session.execute(
                text("SELECT set_config(:name, :value, true)"),
                {"name": name, "value": str(value)},
            )

    async def reset_session_vars(self, names: Sequence[str]) -> None:
        if self._dialect_name() != "postgresql":
            return
        for name in names:
            await self.session.execute(
                text("SELECT set_config(:name, '', true)"),
                {"name": name},
            )
