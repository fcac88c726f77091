from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, Mapping

from tenantguard.domain.context import TenantContext
from tenantguard.persistence.access import DataAccess
from tenantguard.services.alerts import safe_security_alert


logger = logging.getLogger(__name__)

SEVERITY_LOW = "LOW"
SEVERITY_MEDIUM = "MEDIUM"
SEVERITY_HIGH = "HIGH"
SEVERITY_CRITICAL = "CRITICAL"

_SEVERITY_LOG_LEVELS = {
    SEVERITY_LOW: logging.INFO,
    SEVERITY_MEDIUM: logging.INFO,
    SEVERITY_HIGH: logging.WARNING,
    SEVERITY_CRITICAL: logging.ERROR,
}

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "cookie"]
_REDACTED_VALUE = "[REDACTED]"

# Fields covered by the tamper hash; ids and storage timestamps are excluded.
_HASHED_FIELDS = (
    "occurred_at",
    "tenant_id",
    "actor_id",
    "action",
    "resource_type",
    "resource_id",
    "outcome",
    "severity",
    "correlation_id",
    "request_id",
    "error_code",
    "metadata_json",
)

Alerter = Callable[[Mapping[str, Any]], Awaitable[Any]]
SinkFactory = Callable[[], AbstractAsyncContextManager[DataAccess]]


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def _json_default(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def compute_event_hash(row: Mapping[str, Any]) -> str:
    """Return the SHA-256 hex digest of an event's canonical JSON body."""
    body = {name: row.get(name) for name in _HASHED_FIELDS}
    encoded = json.dumps(body, sort_keys=True, separators=(",", ":"), default=_json_default)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def verify_event_hash(row: Mapping[str, Any]) -> bool:
    return bool(row.get("event_hash")) and compute_event_hash(row) == row["event_hash"]


class AuditEmitter:
    """Append-only security event sink with fire-and-log semantics.

    Events are written through a :class:`DataAccess` handle (``sink``) or a
    factory that opens a dedicated one per event (``sink_factory``) so audit
    rows survive a rollback of the request's own transaction. Write failures
    are logged and never propagate to the caller.
    """

    def __init__(
        self,
        sink: DataAccess | None = None,
        *,
        sink_factory: SinkFactory | None = None,
        alerter: Alerter | None = safe_security_alert,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._sink = sink
        self._sink_factory = sink_factory
        self._alerter = alerter
        self._time_provider = time_provider or (lambda: datetime.now(timezone.utc))

    async def emit(
        self,
        *,
        action: str,
        outcome: str,
        severity: str = SEVERITY_LOW,
        context: TenantContext | None = None,
        tenant_id: str | None = None,
        actor_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        correlation_id: str | None = None,
        request_id: str | None = None,
        error_code: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        if severity not in _SEVERITY_LOG_LEVELS:
            raise ValueError(f"unknown severity: {severity}")
        if context is not None:
            tenant_id = tenant_id or context.tenant_id
            actor_id = actor_id or context.user_id
            correlation_id = correlation_id or context.correlation_id
            request_id = request_id or context.request_id
        row: dict[str, Any] = {
            "occurred_at": self._time_provider(),
            "tenant_id": tenant_id,
            "actor_id": actor_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "outcome": outcome,
            "severity": severity,
            "correlation_id": correlation_id,
            "request_id": request_id,
            "error_code": error_code,
            "metadata_json": sanitize_metadata(metadata or {}),
        }
        row["event_hash"] = compute_event_hash(row)

        logger.log(
            _SEVERITY_LOG_LEVELS[severity],
            "security_event action=%s outcome=%s severity=%s tenant_id=%s resource_type=%s error_code=%s correlation_id=%s",
            action,
            outcome,
            severity,
            tenant_id,
            resource_type,
            error_code,
            correlation_id,
        )
        await self._append(row)
        if severity == SEVERITY_CRITICAL and self._alerter is not None:
            await self._alerter(row)
        return row

    async def _append(self, row: dict[str, Any]) -> None:
        # Audit writes are best-effort so they never gate the primary operation.
        try:
            if self._sink_factory is not None:
                async with self._sink_factory() as sink:
                    await sink.create("security_events", row)
            elif self._sink is not None:
                await self._sink.create("security_events", row)
        except Exception as exc:  # noqa: BLE001 - audit sink failures are non-fatal
            logger.warning(
                "security_event_write_failed action=%s correlation_id=%s",
                row["action"],
                row["correlation_id"],
                exc_info=exc,
            )
