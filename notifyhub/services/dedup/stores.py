from __future__ import annotations

import time
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from notifyhub.core.errors import StoreUnavailable


# Delete only when the caller still holds the lease.
_RELEASE_LUA = r"""
if redis.call("GET", KEYS[1]) == ARGV[1] then
  return redis.call("DEL", KEYS[1])
end
return 0
"""


class LeaseStore(Protocol):
    # Atomic set-if-absent-with-TTL plus holder-checked release.
    async def acquire(self, key: str, holder: str, ttl_s: float) -> bool: ...

    async def release(self, key: str, holder: str) -> bool: ...


class RedisLeaseStore:
    def __init__(self, redis: Redis, *, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def acquire(self, key: str, holder: str, ttl_s: float) -> bool:
        ttl_ms = max(1, int(ttl_s * 1000))
        try:
            acquired = await self._redis.set(self._key(key), holder, nx=True, px=ttl_ms)
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"lease store unavailable: {exc}") from exc
        return bool(acquired)

    async def release(self, key: str, holder: str) -> bool:
        try:
            deleted = await self._redis.eval(_RELEASE_LUA, 1, self._key(key), holder)
        except (RedisError, OSError) as exc:
            raise StoreUnavailable(f"lease store unavailable: {exc}") from exc
        return bool(deleted)


class InMemoryLeaseStore:
    # Process-local lease store for inline mode and tests; expiry follows the injected time source.
    def __init__(self, time_source: Callable[[], float] | None = None) -> None:
        self._time = time_source or time.monotonic
        self._leases: dict[str, tuple[str, float]] = {}

    def _live_holder(self, key: str) -> str | None:
        item = self._leases.get(key)
        if item is None:
            return None
        holder, expires_at = item
        if self._time() >= expires_at:
            self._leases.pop(key, None)
            return None
        return holder

    def _prune(self, now: float) -> None:
        # Intake leases live for the whole dedup TTL; drop expired ones so the map stays bounded.
        expired = [key for key, (_, expires_at) in self._leases.items() if now >= expires_at]
        for key in expired:
            del self._leases[key]

    async def acquire(self, key: str, holder: str, ttl_s: float) -> bool:
        now = self._time()
        self._prune(now)
        if key in self._leases:
            return False
        self._leases[key] = (holder, now + ttl_s)
        return True

    async def release(self, key: str, holder: str) -> bool:
        if self._live_holder(key) != holder:
            return False
        self._leases.pop(key, None)
        return True

    def holder(self, key: str) -> str | None:
        return self._live_holder(key)
