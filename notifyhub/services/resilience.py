from __future__ import annotations

import asyncio
import logging

from redis.asyncio import Redis

from notifyhub.core.config import get_settings


logger = logging.getLogger(__name__)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_shared_redis() -> Redis | None:
    # Reuse one Redis client per event loop for leases, rate limits and in-app fanout.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("shared_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool
