"""Tenant-scoped data access.

:class:`ScopedClient` wraps any :class:`~tenantguard.persistence.access.DataAccess`
adapter and rewrites every operation so it can only touch rows belonging to
the context's tenant:

* reads get ``tenant_id`` merged into the filter, including every ``OR`` and
  ``AND`` branch; a caller-supplied ``tenant_id`` predicate is kept and ANDed
  with the context tenant, so a foreign predicate matches nothing;
* creates have ``tenant_id`` force-set on the payload;
* updates and deletes get ``tenant_id`` merged into their filter, and an
  update may never move a row to another tenant;
* raw SQL must reference ``tenant_id`` and receives the context tenant as the
  ``tenant_id`` bind parameter. This check is textual and is defense in depth
  on top of the row-level policies, not a parser.

Every returned row is re-checked and a foreign row raises immediately.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
import logging
import re
from typing import Any, AsyncIterator, TypeVar

from tenantguard.core.errors import (
    DataAccessError,
    RawQueryRejectedError,
    TenantGuardError,
    TenantIsolationError,
)
from tenantguard.domain.context import SESSION_VARIABLES, TenantContext
from tenantguard.domain.models import tenant_scoped_entities
from tenantguard.persistence.access import DataAccess, Filter, OrderBy, Row, validate_filter
from tenantguard.persistence.guards import require_tenant_id
from tenantguard.services.audit import SEVERITY_CRITICAL, SEVERITY_HIGH, AuditEmitter


logger = logging.getLogger(__name__)

TENANT_COLUMN = "tenant_id"
_TENANT_REFERENCE = re.compile(r"\btenant_?id\b", re.IGNORECASE)
_DESTRUCTIVE_STATEMENT = re.compile(r"\b(drop|alter|truncate|grant|revoke)\b", re.IGNORECASE)

T = TypeVar("T")

_NO_PREDICATE = object()


@asynccontextmanager
async def tenant_session(db: DataAccess, context: TenantContext) -> AsyncIterator[DataAccess]:
    """Set storage session variables for ``context`` and always clear them.

    The variables are reset on success, on error and on task cancellation.
    """
    await db.set_session_vars(context.session_variables())
    try:
        yield db
    finally:
        try:
            await db.reset_session_vars(SESSION_VARIABLES)
        except Exception as exc:  # noqa: BLE001 - settings are transaction-local and die with the rollback
            logger.warning("session_vars_reset_failed tenant_id=%s", context.tenant_id, exc_info=exc)


def scope_filter(where: Filter | None, tenant_id: str) -> dict[str, Any]:
    """Return ``where`` with the tenant predicate merged in at every level."""
    validate_filter(where)
    if not where:
        return {TENANT_COLUMN: tenant_id}
    scoped: dict[str, Any] = {}
    caller_predicate: Any = _NO_PREDICATE
    for key, value in where.items():
        if key in ("OR", "AND"):
            scoped[key] = [scope_filter(branch, tenant_id) for branch in value]
        elif key == TENANT_COLUMN:
            if value != tenant_id:
                caller_predicate = value
        else:
            scoped[key] = value
    if caller_predicate is not _NO_PREDICATE:
        # A foreign tenant predicate is ANDed with the context tenant, never replaced by it.
        logger.warning("tenant_filter_conflict tenant_id=%s", tenant_id)
        scoped["AND"] = [*scoped.get("AND", []), {TENANT_COLUMN: caller_predicate}]
    scoped[TENANT_COLUMN] = tenant_id
    return scoped


class ScopedClient:
    def __init__(
        self,
        db: DataAccess,
        context: TenantContext,
        *,
        emitter: AuditEmitter | None = None,
        admin: bool = False,
        tenant_entities: frozenset[str] | None = None,
        pinned: bool = False,
    ) -> None:
        self._tenant_id = require_tenant_id(context.tenant_id, operation="scoped_client")
        self._db = db
        self._context = context
        self._emitter = emitter
        self._admin = admin
        self._tenant_entities = tenant_entities if tenant_entities is not None else tenant_scoped_entities()
        # Pinned clients run inside a transaction that already holds the session variables.
        self._pinned = pinned

    @property
    def context(self) -> TenantContext:
        return self._context

    @property
    def tenant_id(self) -> str:
        return self._tenant_id

    def _require_tenant_entity(self, operation: str, entity: str) -> None:
        if entity not in self._tenant_entities:
            raise TenantIsolationError(
                f"entity {entity} is not tenant-scoped",
                tenant_id=self._tenant_id,
                operation=operation,
                entity=entity,
                code="UNSCOPED_ENTITY",
            )

    async def _violation(self, exc: TenantIsolationError, *, severity: str = SEVERITY_CRITICAL) -> None:
        logger.log(
            logging.CRITICAL if severity == SEVERITY_CRITICAL else logging.WARNING,
            "tenant_isolation_violation code=%s operation=%s entity=%s tenant_id=%s",
            exc.code,
            exc.operation,
            exc.entity,
            exc.tenant_id,
        )
        if self._emitter is not None:
            await self._emitter.emit(
                action="isolation.violation",
                outcome="blocked",
                severity=severity,
                context=self._context,
                resource_type=exc.entity,
                error_code=exc.code,
                metadata={"operation": exc.operation, "detail": str(exc)},
            )

    async def _run(self, operation: str, entity: str | None, call: Callable[[DataAccess], Awaitable[T]]) -> T:
        # Session variables are scoped to this single operation.
        try:
            if self._pinned:
                return await call(self._db)
            async with tenant_session(self._db, self._context) as db:
                return await call(db)
        except TenantGuardError:
            raise
        except Exception as exc:
            logger.warning(
                "scoped_operation_failed operation=%s entity=%s tenant_id=%s",
                operation,
                entity,
                self._tenant_id,
                exc_info=exc,
            )
            raise DataAccessError(
                f"{operation} on {entity} failed: {exc}",
                tenant_id=self._tenant_id,
                operation=operation,
                entity=entity,
            ) from exc

    async def _verify_rows(self, operation: str, entity: str | None, rows: Sequence[Row], *, strict: bool = True) -> None:
        # Re-check every row; a single foreign row fails the whole operation.
        for row in rows:
            if TENANT_COLUMN not in row and not strict:
                continue
            if row.get(TENANT_COLUMN) != self._tenant_id:
                exc = TenantIsolationError(
                    f"{operation} returned a row outside tenant scope",
                    tenant_id=self._tenant_id,
                    operation=operation,
                    entity=entity,
                )
                await self._violation(exc)
                raise exc

    async def find_one(self, entity: str, *, where: Filter | None = None) -> Row | None:
        self._require_tenant_entity("find_one", entity)
        scoped = scope_filter(where, self._tenant_id)
        row = await self._run("find_one", entity, lambda db: db.find_one(entity, where=scoped))
        if row is not None:
            await self._verify_rows("find_one", entity, [row])
        return row

    async def find_many(
        self,
        entity: str,
        *,
        where: Filter | None = None,
        order_by: OrderBy | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[Row]:
        self._require_tenant_entity("find_many", entity)
        scoped = scope_filter(where, self._tenant_id)
        rows = await self._run(
            "find_many",
            entity,
            lambda db: db.find_many(entity, where=scoped, order_by=order_by, limit=limit, offset=offset),
        )
        await self._verify_rows("find_many", entity, rows)
        return rows

    async def count(self, entity: str, *, where: Filter | None = None) -> int:
        self._require_tenant_entity("count", entity)
        scoped = scope_filter(where, self._tenant_id)
        return await self._run("count", entity, lambda db: db.count(entity, where=scoped))

    async def aggregate(
        self,
        entity: str,
        *,
        where: Filter | None = None,
        sum_fields: Sequence[str] = (),
        min_fields: Sequence[str] = (),
        max_fields: Sequence[str] = (),
    ) -> dict[str, Any]:
        self._require_tenant_entity("aggregate", entity)
        scoped = scope_filter(where, self._tenant_id)
        return await self._run(
            "aggregate",
            entity,
            lambda db: db.aggregate(
                entity,
                where=scoped,
                sum_fields=sum_fields,
                min_fields=min_fields,
                max_fields=max_fields,
            ),
        )

    async def create(self, entity: str, data: Mapping[str, Any]) -> Row:
        rows = await self.create_many(entity, [data])
        return rows[0]

    async def create_many(self, entity: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        self._require_tenant_entity("create", entity)
        payloads = []
        for data in rows:
            if data.get(TENANT_COLUMN) not in (None, self._tenant_id):
                logger.warning("tenant_payload_overridden entity=%s tenant_id=%s", entity, self._tenant_id)
            payloads.append({**dict(data), TENANT_COLUMN: self._tenant_id})
        created = await self._run("create", entity, lambda db: db.create_many(entity, payloads))
        await self._verify_rows("create", entity, created)
        return created

    async def update(self, entity: str, *, where: Filter | None = None, data: Mapping[str, Any]) -> list[Row]:
        self._require_tenant_entity("update", entity)
        if TENANT_COLUMN in data and data[TENANT_COLUMN] != self._tenant_id:
            exc = TenantIsolationError(
                "update attempted to change tenant_id",
                tenant_id=self._tenant_id,
                operation="update",
                entity=entity,
            )
            await self._violation(exc)
            raise exc
        scoped = scope_filter(where, self._tenant_id)
        values = {key: value for key, value in data.items() if key != TENANT_COLUMN}
        updated = await self._run("update", entity, lambda db: db.update(entity, where=scoped, data=values))
        await self._verify_rows("update", entity, updated)
        return updated

    async def delete(self, entity: str, *, where: Filter | None = None) -> list[Row]:
        self._require_tenant_entity("delete", entity)
        scoped = scope_filter(where, self._tenant_id)
        deleted = await self._run("delete", entity, lambda db: db.delete(entity, where=scoped))
        await self._verify_rows("delete", entity, deleted)
        return deleted

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
        self._require_tenant_entity("increment", entity)
        scoped_key = {**dict(key), TENANT_COLUMN: self._tenant_id}
        row = await self._run(
            "increment",
            entity,
            lambda db: db.increment(
                entity, key=scoped_key, field=field, amount=amount, defaults=defaults, ceiling=ceiling
            ),
        )
        if row is None:
            return None
        await self._verify_rows("increment", entity, [row])
        return row

    async def raw(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        *,
        allow_destructive: bool = False,
    ) -> list[Row]:
        if not _TENANT_REFERENCE.search(sql):
            exc = RawQueryRejectedError(
                "raw query does not reference tenant_id",
                tenant_id=self._tenant_id,
                operation="raw",
            )
            await self._violation(exc, severity=SEVERITY_HIGH)
            raise exc
        if _DESTRUCTIVE_STATEMENT.search(sql) and not (allow_destructive and self._admin):
            exc = RawQueryRejectedError(
                "raw query contains a blocked statement",
                tenant_id=self._tenant_id,
                operation="raw",
                code="RAW_QUERY_DESTRUCTIVE",
            )
            await self._violation(exc, severity=SEVERITY_HIGH)
            raise exc
        bound = {**dict(params or {}), TENANT_COLUMN: self._tenant_id}
        rows = await self._run("raw", None, lambda db: db.raw(sql, bound))
        # Projections may omit tenant_id; rows that carry it must match.
        await self._verify_rows("raw", None, rows, strict=False)
        return rows

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["ScopedClient"]:
        # Session variables are re-established inside the transaction itself.
        async with self._db.transaction() as tx_db:
            async with tenant_session(tx_db, self._context):
                yield ScopedClient(
                    tx_db,
                    self._context,
                    emitter=self._emitter,
                    admin=self._admin,
                    tenant_entities=self._tenant_entities,
                    pinned=True,
                )

    async def batch(self, operations: Sequence[Callable[["ScopedClient"], Awaitable[Any]]]) -> list[Any]:
        """Run ``operations`` sequentially in one transaction; any failure rolls back all."""
        results = []
        async with self.transaction() as tx:
            for operation in operations:
                results.append(await operation(tx))
        return results


def scoped_client(
    db: DataAccess,
    context: TenantContext,
    *,
    emitter: AuditEmitter | None = None,
    admin: bool = False,
) -> ScopedClient:
    return ScopedClient(db, context, emitter=emitter, admin=admin)
