from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
import logging
import re
import threading
from typing import Any, Sequence

from tenantguard.core.config import Settings, get_settings
from tenantguard.core.errors import (
    ACCESS_DENIED_MESSAGE,
    INVALID_REQUEST_MESSAGE,
    NOT_FOUND_MESSAGE,
    RATE_LIMITED_MESSAGE,
    SAFE_MESSAGES,
    ResourceAccessError,
    TenantIsolationError,
)
from tenantguard.domain.context import TenantContext
from tenantguard.persistence.access import DataAccess
from tenantguard.services.attempts import AttemptTracker, InMemoryAttemptTracker
from tenantguard.services.audit import SEVERITY_HIGH, SEVERITY_MEDIUM, AuditEmitter
from tenantguard.services.isolation import ScopedClient


logger = logging.getLogger(__name__)

_CUID = re.compile(r"^c[a-z0-9]{24}$")
_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
_NUMERIC = re.compile(r"^\d{1,18}$")
# Low-entropy cuids produced by seeding scripts and guessing tools.
_PADDED_CUID = re.compile(r"^c(?:0{3,}|1{3,}|2{3,})")

_LEAK_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"tenant.*not.*found",
        r"cross.*tenant",
        r"access.*denied",
        r"unauthori[sz]ed",
        r"permission.*denied",
        r"resource.*not.*found",
        r"user.*not.*found",
        r"company.*not.*found",
    )
]
_TENANT_ID_TOKEN = re.compile(r"\btn_[0-9a-f]{32}\b")

# Resource types that support ownership checks, mapped to their tables.
RESOURCE_ENTITIES: dict[str, str] = {
    "company": "companies",
    "invoice": "invoices",
    "transaction": "transactions",
}

CODE_OK = "OK"
CODE_NOT_FOUND = "NOT_FOUND"
CODE_ACCESS_DENIED = "ACCESS_DENIED"
CODE_RATE_LIMITED = "RATE_LIMITED"
CODE_INVALID_FORMAT = "INVALID_RESOURCE_ID_FORMAT"
CODE_ENUMERATION = "ENUMERATION_ATTEMPT_BLOCKED"
CODE_BULK_TOO_LARGE = "BULK_OPERATION_TOO_LARGE"
CODE_BULK_PATTERN = "BULK_PATTERN_DETECTED"

_PUBLIC_MESSAGES = {
    CODE_NOT_FOUND: NOT_FOUND_MESSAGE,
    CODE_ACCESS_DENIED: ACCESS_DENIED_MESSAGE,
    CODE_RATE_LIMITED: RATE_LIMITED_MESSAGE,
    CODE_INVALID_FORMAT: INVALID_REQUEST_MESSAGE,
    CODE_BULK_TOO_LARGE: INVALID_REQUEST_MESSAGE,
}


@dataclass(frozen=True)
class DetectionConfig:
    enumeration_check_enabled: bool = True
    enumeration_numeric_threshold: int = 10000
    error_sanitization_enabled: bool = True
    max_bulk_ids: int = 100
    bulk_progression_max_step: int = 10
    max_attempts: int = 100

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DetectionConfig":
        settings = settings or get_settings()
        return cls(
            enumeration_check_enabled=settings.enumeration_check_enabled,
            enumeration_numeric_threshold=settings.enumeration_numeric_threshold,
            error_sanitization_enabled=settings.error_sanitization_enabled,
            max_bulk_ids=settings.max_bulk_ids,
            bulk_progression_max_step=settings.bulk_progression_max_step,
            max_attempts=settings.validation_max_attempts,
        )


@dataclass(frozen=True)
class ResourceIdCheck:
    # code is the internal reason; it never reaches clients unmapped.
    valid: bool
    id_kind: str | None = None
    code: str | None = None


@dataclass(frozen=True)
class OwnershipResult:
    ok: bool
    code: str
    message: str | None = None


@dataclass(frozen=True)
class BulkValidationResult:
    ok: bool
    code: str
    message: str | None = None
    reason: str | None = None
    flagged_ids: tuple[str, ...] = ()


class SecurityMetrics:
    """Process-wide counters of blocked validation attempts."""

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def record(self, reason: str) -> None:
        with self._lock:
            self._counts[reason] += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def clear(self) -> None:
        with self._lock:
            self._counts.clear()


def classify_resource_id(resource_id: Any) -> str | None:
    # Accept only the identifier shapes the platform issues.
    if not isinstance(resource_id, str):
        return None
    if _CUID.fullmatch(resource_id):
        return "cuid"
    if _UUID.fullmatch(resource_id):
        return "uuid"
    if _NUMERIC.fullmatch(resource_id):
        return "numeric"
    return None


def find_numeric_progression(values: Sequence[int], *, max_step: int) -> tuple[int, ...]:
    """Return the members of any guessable sequence among ``values``.

    Flags the whole batch when three or more values form a constant-step
    progression with a step of at most ``max_step``; a step of zero (one ID
    repeated) counts. Otherwise flags both members of every pair of
    consecutive integers.
    """
    ordered = sorted(values)
    if len(ordered) >= 3:
        steps = {b - a for a, b in zip(ordered, ordered[1:])}
        if len(steps) == 1 and next(iter(steps)) <= max_step:
            return tuple(dict.fromkeys(ordered))
    flagged: dict[int, None] = {}
    for a, b in zip(ordered, ordered[1:]):
        if b - a == 1:
            flagged[a] = None
            flagged[b] = None
    return tuple(flagged)


class AttackDetector:
    def __init__(
        self,
        db: DataAccess,
        *,
        config: DetectionConfig | None = None,
        tracker: AttemptTracker | None = None,
        emitter: AuditEmitter | None = None,
        metrics: SecurityMetrics | None = None,
    ) -> None:
        self._db = db
        self._config = config or DetectionConfig.from_settings()
        self._tracker = tracker or InMemoryAttemptTracker()
        self._emitter = emitter
        self._metrics = metrics or SecurityMetrics()

    @property
    def config(self) -> DetectionConfig:
        return self._config

    async def _report(
        self,
        *,
        context: TenantContext | None,
        action: str,
        reason: str,
        severity: str,
        resource_type: str | None,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._metrics.record(reason)
        logger.warning(
            "attack_detection_blocked action=%s reason=%s resource_type=%s tenant_id=%s",
            action,
            reason,
            resource_type,
            context.tenant_id if context else None,
        )
        if self._emitter is not None:
            await self._emitter.emit(
                action=action,
                outcome="blocked",
                severity=severity,
                context=context,
                resource_type=resource_type,
                resource_id=resource_id,
                error_code=reason,
                metadata=metadata,
            )

    def _is_enumeration(self, resource_id: str, id_kind: str) -> bool:
        if not self._config.enumeration_check_enabled:
            return False
        if id_kind == "numeric":
            padded = len(resource_id) > 1 and resource_id.startswith("0")
            return padded or int(resource_id) < self._config.enumeration_numeric_threshold
        if id_kind == "cuid":
            return _PADDED_CUID.match(resource_id) is not None
        return False

    async def validate_resource_id(
        self,
        resource_type: str,
        resource_id: Any,
        *,
        context: TenantContext | None = None,
    ) -> ResourceIdCheck:
        id_kind = classify_resource_id(resource_id)
        if id_kind is None:
            await self._report(
                context=context,
                action="attack.invalid_resource_id",
                reason=CODE_INVALID_FORMAT,
                severity=SEVERITY_MEDIUM,
                resource_type=resource_type,
            )
            return ResourceIdCheck(valid=False, code=CODE_INVALID_FORMAT)
        if self._is_enumeration(resource_id, id_kind):
            await self._report(
                context=context,
                action="attack.enumeration",
                reason=CODE_ENUMERATION,
                severity=SEVERITY_HIGH,
                resource_type=resource_type,
                resource_id=resource_id,
            )
            return ResourceIdCheck(valid=False, id_kind=id_kind, code=CODE_ENUMERATION)
        return ResourceIdCheck(valid=True, id_kind=id_kind)

    async def check_rate_limit(self, context: TenantContext) -> bool:
        # Attempts are budgeted per (user, request) with sliding expiry.
        attempts = await self._tracker.hit(f"{context.user_id}:{context.request_id}")
        if attempts > self._config.max_attempts:
            await self._report(
                context=context,
                action="attack.rate_limited",
                reason=CODE_RATE_LIMITED,
                severity=SEVERITY_HIGH,
                resource_type=None,
                metadata={"attempts": attempts},
            )
            return False
        return True

    async def validate_ownership(
        self,
        context: TenantContext,
        resource_type: str,
        resource_id: Any,
    ) -> OwnershipResult:
        """Check that ``resource_id`` exists and belongs to the context tenant.

        A resource owned by another tenant is reported exactly like a missing
        one; the distinction only reaches logs and the audit trail.
        """
        if not await self.check_rate_limit(context):
            return self._ownership_failure(CODE_RATE_LIMITED)
        check = await self.validate_resource_id(resource_type, resource_id, context=context)
        if not check.valid:
            code = CODE_INVALID_FORMAT if check.code == CODE_INVALID_FORMAT else CODE_ACCESS_DENIED
            return self._ownership_failure(code)
        entity = RESOURCE_ENTITIES.get(resource_type)
        if entity is None:
            logger.info("ownership_unknown_resource_type resource_type=%s", resource_type)
            return self._ownership_failure(CODE_NOT_FOUND)

        scoped = ScopedClient(self._db, context, emitter=self._emitter)
        try:
            row = await scoped.find_one(entity, where={"id": resource_id, "deleted_at": None})
        except TenantIsolationError:
            row = {"tenant_id": None}
        if row is None:
            logger.info(
                "ownership_not_found resource_type=%s tenant_id=%s",
                resource_type,
                context.tenant_id,
            )
            return self._ownership_failure(CODE_NOT_FOUND)
        if row.get("tenant_id") != context.tenant_id:
            # Only reachable when storage ignored the tenant predicate.
            await self._report(
                context=context,
                action="attack.cross_tenant_access",
                reason="CROSS_TENANT_ACCESS_BLOCKED",
                severity=SEVERITY_HIGH,
                resource_type=resource_type,
                resource_id=resource_id,
            )
            return self._ownership_failure(CODE_NOT_FOUND)
        return OwnershipResult(ok=True, code=CODE_OK)

    def _ownership_failure(self, code: str) -> OwnershipResult:
        return OwnershipResult(ok=False, code=code, message=_PUBLIC_MESSAGES[code])

    async def require_ownership(self, context: TenantContext, resource_type: str, resource_id: Any) -> None:
        result = await self.validate_ownership(context, resource_type, resource_id)
        if not result.ok:
            raise ResourceAccessError(f"ownership check failed code={result.code}", code=result.code)

    async def validate_bulk(
        self,
        context: TenantContext,
        resource_type: str,
        resource_ids: Any,
    ) -> BulkValidationResult:
        if not isinstance(resource_ids, (list, tuple)) or not resource_ids:
            return self._bulk_failure(CODE_INVALID_FORMAT, reason=CODE_INVALID_FORMAT)
        if len(resource_ids) > self._config.max_bulk_ids:
            await self._report(
                context=context,
                action="attack.bulk_oversized",
                reason=CODE_BULK_TOO_LARGE,
                severity=SEVERITY_MEDIUM,
                resource_type=resource_type,
                metadata={"count": len(resource_ids)},
            )
            return self._bulk_failure(CODE_BULK_TOO_LARGE, reason=CODE_BULK_TOO_LARGE)

        kinds = [classify_resource_id(resource_id) for resource_id in resource_ids]
        malformed = tuple(str(rid) for rid, kind in zip(resource_ids, kinds) if kind is None)
        if malformed:
            await self._report(
                context=context,
                action="attack.invalid_resource_id",
                reason=CODE_INVALID_FORMAT,
                severity=SEVERITY_MEDIUM,
                resource_type=resource_type,
                metadata={"count": len(malformed)},
            )
            return self._bulk_failure(CODE_INVALID_FORMAT, reason=CODE_INVALID_FORMAT, flagged=malformed)

        numeric = [int(rid) for rid, kind in zip(resource_ids, kinds) if kind == "numeric"]
        progression = find_numeric_progression(numeric, max_step=self._config.bulk_progression_max_step)
        if progression:
            flagged = tuple(str(value) for value in progression)
            await self._report(
                context=context,
                action="attack.bulk_pattern",
                reason=CODE_BULK_PATTERN,
                severity=SEVERITY_HIGH,
                resource_type=resource_type,
                metadata={"flagged": len(flagged)},
            )
            return self._bulk_failure(CODE_ACCESS_DENIED, reason=CODE_BULK_PATTERN, flagged=flagged)

        enumerated = tuple(
            rid for rid, kind in zip(resource_ids, kinds) if self._is_enumeration(rid, kind)
        )
        if enumerated:
            await self._report(
                context=context,
                action="attack.enumeration",
                reason=CODE_ENUMERATION,
                severity=SEVERITY_HIGH,
                resource_type=resource_type,
                metadata={"flagged": len(enumerated)},
            )
            return self._bulk_failure(CODE_ACCESS_DENIED, reason=CODE_ENUMERATION, flagged=enumerated)
        return BulkValidationResult(ok=True, code=CODE_OK)

    def _bulk_failure(self, code: str, *, reason: str, flagged: tuple[str, ...] = ()) -> BulkValidationResult:
        return BulkValidationResult(
            ok=False,
            code=code,
            message=_PUBLIC_MESSAGES[code],
            reason=reason,
            flagged_ids=flagged,
        )

    async def validate_bulk_ownership(
        self,
        context: TenantContext,
        resource_type: str,
        resource_ids: Any,
    ) -> BulkValidationResult:
        # Pattern checks run before any storage lookup.
        result = await self.validate_bulk(context, resource_type, resource_ids)
        if not result.ok:
            return result
        missing = []
        for resource_id in resource_ids:
            ownership = await self.validate_ownership(context, resource_type, resource_id)
            if ownership.code == CODE_RATE_LIMITED:
                return self._bulk_failure(CODE_ACCESS_DENIED, reason=CODE_RATE_LIMITED)
            if not ownership.ok:
                missing.append(resource_id)
        if missing:
            return self._bulk_failure(CODE_NOT_FOUND, reason=CODE_NOT_FOUND, flagged=tuple(missing))
        return result

    def sanitize_error(
        self,
        error: BaseException | str,
        *,
        tenant_id: str | None = None,
        user_id: str | None = None,
        resource_id: str | None = None,
    ) -> str:
        return sanitize_error(
            error,
            tenant_id=tenant_id,
            user_id=user_id,
            resource_id=resource_id,
            enabled=self._config.error_sanitization_enabled,
        )

    async def metrics(self) -> dict[str, Any]:
        return {
            "tracked_keys": await self._tracker.tracked_keys(),
            "blocked": self._metrics.snapshot(),
        }


def sanitize_error(
    error: BaseException | str,
    *,
    tenant_id: str | None = None,
    user_id: str | None = None,
    resource_id: str | None = None,
    enabled: bool = True,
) -> str:
    """Collapse messages that could reveal tenant boundaries into a generic message."""
    message = error if isinstance(error, str) else str(error)
    if not enabled or message in SAFE_MESSAGES:
        return message
    if any(pattern.search(message) for pattern in _LEAK_PATTERNS):
        return ACCESS_DENIED_MESSAGE
    if _TENANT_ID_TOKEN.search(message):
        return ACCESS_DENIED_MESSAGE
    if (tenant_id and tenant_id in message) or (user_id and user_id in message):
        return ACCESS_DENIED_MESSAGE
    if resource_id and resource_id in message:
        return NOT_FOUND_MESSAGE
    return message


async def validate_resource_ownership(
    context: TenantContext,
    resource_type: str,
    resource_id: Any,
    *,
    detector: AttackDetector,
) -> OwnershipResult:
    return await detector.validate_ownership(context, resource_type, resource_id)


