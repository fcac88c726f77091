from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any, Mapping

import httpx

from tenantguard.core.config import get_settings


logger = logging.getLogger(__name__)


def alert_signature(secret: str, payload: bytes) -> str:
    # Compute HMAC SHA256 signature for security alert payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def _encode(event: Mapping[str, Any]) -> bytes:
    return json.dumps(dict(event), separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


async def send_security_alert(event: Mapping[str, Any]) -> bool:
    # Post signed alert payloads; returns False when alerting is disabled.
    settings = get_settings()
    if not settings.security_alert_webhook_enabled:
        return False
    if not settings.security_alert_webhook_url or not settings.security_alert_webhook_secret:
        logger.warning("security_alert_webhook_missing_config")
        return False

    body = _encode(event)
    headers = {
        "Content-Type": "application/json",
        "X-Security-Signature": alert_signature(settings.security_alert_webhook_secret, body),
        "X-Security-Event": str(event.get("action") or "security.event"),
    }
    timeout = settings.security_alert_webhook_timeout_ms / 1000.0
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.post(settings.security_alert_webhook_url, content=body, headers=headers)
        response.raise_for_status()
    return True


async def safe_security_alert(event: Mapping[str, Any]) -> bool:
    # Alert delivery never affects the operation that raised the event.
    try:
        return await send_security_alert(event)
    except Exception as exc:  # noqa: BLE001 - alert failures are non-fatal
        logger.warning("security_alert_failed action=%s", event.get("action"), exc_info=exc)
        return False
