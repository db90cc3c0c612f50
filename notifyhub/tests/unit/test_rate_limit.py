from __future__ import annotations

from datetime import datetime, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from notifyhub.services.delivery.rate_limit import InMemoryChannelRateLimiter, RedisChannelRateLimiter


NOW = datetime(2026, 3, 2, 12, 15, tzinfo=timezone.utc)


class CountingRedis:
    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.keys: list[str] = []

    async def eval(self, script: str, numkeys: int, key: str, ttl: int) -> int:
        self.keys.append(key)
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]


class BrokenRedis:
    async def eval(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_in_memory_limiter_blocks_after_limit_until_next_hour() -> None:
    limiter = InMemoryChannelRateLimiter()

    first = await limiter.check(tenant_id="t", channel="sms", limit=2, now=NOW)
    second = await limiter.check(tenant_id="t", channel="sms", limit=2, now=NOW)
    third = await limiter.check(tenant_id="t", channel="sms", limit=2, now=NOW)

    assert first.allowed and second.allowed
    assert third.allowed is False
    assert third.retry_after_ms == 45 * 60 * 1000

    next_hour = NOW.replace(hour=13, minute=0)
    assert (await limiter.check(tenant_id="t", channel="sms", limit=2, now=next_hour)).allowed is True


@pytest.mark.asyncio
async def test_in_memory_limiter_counts_per_tenant_and_channel() -> None:
    limiter = InMemoryChannelRateLimiter()
    await limiter.check(tenant_id="t", channel="sms", limit=1, now=NOW)

    assert (await limiter.check(tenant_id="t", channel="email", limit=1, now=NOW)).allowed is True
    assert (await limiter.check(tenant_id="u", channel="sms", limit=1, now=NOW)).allowed is True


@pytest.mark.asyncio
async def test_redis_limiter_uses_hourly_keys() -> None:
    redis = CountingRedis()
    limiter = RedisChannelRateLimiter(redis, prefix="nh:rl")

    assert (await limiter.check(tenant_id="t", channel="sms", limit=1, now=NOW)).allowed is True
    blocked = await limiter.check(tenant_id="t", channel="sms", limit=1, now=NOW)

    assert blocked.allowed is False
    assert redis.keys[0] == "nh:rl:t:sms:2026030212"


@pytest.mark.asyncio
async def test_redis_limiter_fails_open() -> None:
    limiter = RedisChannelRateLimiter(BrokenRedis(), prefix="nh:rl")

    decision = await limiter.check(tenant_id="t", channel="sms", limit=1, now=NOW)

    assert decision.allowed is True
    assert decision.degraded is True
