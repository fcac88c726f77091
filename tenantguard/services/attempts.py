from __future__ import annotations

import asyncio
import threading
import time
from typing import Awaitable, Callable, Protocol

from redis.asyncio import Redis

from tenantguard.core.config import get_settings


# Count an attempt and refresh the key's expiry in one round trip.
_HIT_LUA = """
local count = redis.call("INCR", KEYS[1])
redis.call("EXPIRE", KEYS[1], ARGV[1])
return count
"""


class AttemptTracker(Protocol):
    async def hit(self, key: str) -> int: ...

    async def sweep(self) -> int: ...

    async def tracked_keys(self) -> int: ...


class InMemoryAttemptTracker:
    """Per-process attempt counters with sliding expiry.

    Each hit refreshes the key's expiry, so a key is forgotten only after a
    full window without attempts.
    """

    def __init__(self, *, window_s: int = 300, time_provider: Callable[[], float] | None = None) -> None:
        self._window_s = window_s
        self._time_provider = time_provider or time.monotonic
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    async def hit(self, key: str) -> int:
        now = self._time_provider()
        with self._lock:
            count, expires_at = self._entries.get(key, (0, 0.0))
            if expires_at <= now:
                count = 0
            count += 1
            self._entries[key] = (count, now + self._window_s)
            return count

    async def sweep(self) -> int:
        # Drop expired keys so idle requests do not accumulate.
        now = self._time_provider()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    async def tracked_keys(self) -> int:
        with self._lock:
            return len(self._entries)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def _get_redis() -> Redis:
    # Cache Redis connections to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            _redis_loop = current_loop
    return _redis_pool


class RedisAttemptTracker:
    """Attempt counters shared across replicas; Redis expiry does the sweeping."""

    def __init__(
        self,
        *,
        window_s: int = 300,
        prefix: str = "tg",
        redis_factory: Callable[[], Awaitable[Redis]] | None = None,
    ) -> None:
        self._window_s = window_s
        self._prefix = prefix
        self._redis_factory = redis_factory or _get_redis

    def _key(self, key: str) -> str:
        return f"{self._prefix}:attempts:{key}"

    async def hit(self, key: str) -> int:
        redis = await self._redis_factory()
        result = await redis.eval(_HIT_LUA, 1, self._key(key), self._window_s)
        return int(result)

    async def sweep(self) -> int:
        return 0

    async def tracked_keys(self) -> int:
        redis = await self._redis_factory()
        count = 0
        async for _ in redis.scan_iter(match=self._key("*")):
            count += 1
        return count


_tracker: AttemptTracker | None = None


def get_attempt_tracker() -> AttemptTracker:
    # Share one tracker per process so attempt counts survive across requests.
    global _tracker
    if _tracker is None:
        settings = get_settings()
        if settings.attempt_tracker_backend == "redis":
            _tracker = RedisAttemptTracker(
                window_s=settings.validation_attempt_window_s,
                prefix=settings.redis_key_prefix,
            )
        else:
            _tracker = InMemoryAttemptTracker(window_s=settings.validation_attempt_window_s)
    return _tracker


def reset_attempt_tracker_state() -> None:
    # Reset cached trackers and Redis connections for deterministic test setup.
    global _tracker, _redis_pool, _redis_loop
    _tracker = None
    _redis_pool = None
    _redis_loop = None
