from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)

_WINDOW_S = 3600

# Count one delivery in the current hourly window and report the new total.
_HOURLY_COUNTER_LUA = r"""
local count = redis.call("INCR", KEYS[1])
if count == 1 then
  redis.call("EXPIRE", KEYS[1], tonumber(ARGV[1]))
end
return count
"""


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int = 0
    # Allowed without counting because the counter store was unreachable.
    degraded: bool = False


def _window_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


def _retry_after_ms(now: datetime) -> int:
    next_window = _window_start(now) + timedelta(seconds=_WINDOW_S)
    return max(1, int((next_window - now).total_seconds() * 1000))


class ChannelRateLimiter(Protocol):
    async def check(self, *, tenant_id: str, channel: str, limit: int, now: datetime) -> RateLimitDecision: ...


class RedisChannelRateLimiter:
    """Fixed hourly window per tenant and channel, counted atomically in Redis.

    Fails open: a counter store outage never blocks delivery.
    """

    def __init__(self, redis: Redis, *, prefix: str) -> None:
        self._redis = redis
        self._prefix = prefix

    def _key(self, tenant_id: str, channel: str, now: datetime) -> str:
        return f"{self._prefix}:{tenant_id}:{channel}:{_window_start(now).strftime('%Y%m%d%H')}"

    async def check(self, *, tenant_id: str, channel: str, limit: int, now: datetime) -> RateLimitDecision:
        try:
            count = await self._redis.eval(
                _HOURLY_COUNTER_LUA,
                1,
                self._key(tenant_id, channel, now),
                _WINDOW_S + 60,
            )
        except (RedisError, OSError) as exc:
            logger.warning(
                "rate_limit_degraded tenant_id=%s channel=%s error=%s", tenant_id, channel, exc
            )
            return RateLimitDecision(allowed=True, degraded=True)
        if int(count) > int(limit):
            return RateLimitDecision(allowed=False, retry_after_ms=_retry_after_ms(now))
        return RateLimitDecision(allowed=True)


class InMemoryChannelRateLimiter:
    def __init__(self) -> None:
        self._counts: dict[tuple[str, str, datetime], int] = {}

    async def check(self, *, tenant_id: str, channel: str, limit: int, now: datetime) -> RateLimitDecision:
        window = _window_start(now)
        # Drop counters from past windows.
        for key in [key for key in self._counts if key[2] < window]:
            del self._counts[key]
        bucket = (tenant_id, channel, window)
        self._counts[bucket] = self._counts.get(bucket, 0) + 1
        if self._counts[bucket] > int(limit):
            return RateLimitDecision(allowed=False, retry_after_ms=_retry_after_ms(now))
        return RateLimitDecision(allowed=True)
