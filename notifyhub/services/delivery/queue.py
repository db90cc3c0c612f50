from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Protocol

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings


logger = logging.getLogger(__name__)

# arq function name registered by the delivery worker.
EXECUTE_JOB_NAME = "execute_delivery_task"

TaskHandler = Callable[[str], Awaitable[Any]]


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class WorkQueue(Protocol):
    # At-least-once handoff of task ids to the worker pool of one queue name.
    async def enqueue(self, task_id: str, *, queue_name: str, defer_ms: int = 0) -> bool: ...

    async def depth(self, queue_name: str) -> int | None: ...

    async def close(self) -> None: ...


class ArqWorkQueue:
    """Work queue on arq/Redis; every queue name is consumed by its own worker process."""

    def __init__(self, redis_url: str) -> None:
        self._redis_url = redis_url
        self._pool: ArqRedis | None = None
        self._pool_loop: asyncio.AbstractEventLoop | None = None
        self._lock = asyncio.Lock()

    async def _get_pool(self) -> ArqRedis:
        # Cache the arq pool per event loop to avoid reconnecting on every enqueue.
        current_loop = asyncio.get_running_loop()
        if self._pool is not None and self._pool_loop == current_loop:
            return self._pool
        if self._pool is not None and self._pool_loop != current_loop:
            self._pool = None
        async with self._lock:
            if self._pool is None:
                self._pool = await create_pool(RedisSettings.from_dsn(self._redis_url))
                self._pool_loop = current_loop
        return self._pool

    async def enqueue(self, task_id: str, *, queue_name: str, defer_ms: int = 0) -> bool:
        defer_delta = timedelta(milliseconds=max(0, int(defer_ms)))
        try:
            redis = await self._get_pool()
            await redis.enqueue_job(
                EXECUTE_JOB_NAME,
                task_id,
                _queue_name=queue_name,
                _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
            )
            return True
        except Exception as exc:  # noqa: BLE001 - enqueue is best-effort; the due-task sweep recovers
            logger.warning("enqueue_failed task_id=%s queue=%s error=%s", task_id, queue_name, exc)
            return False

    async def depth(self, queue_name: str) -> int | None:
        # Return None to signal Redis unavailability to ops endpoints.
        try:
            redis = await self._get_pool()
            return int(await redis.zcard(_queue_key(queue_name)))
        except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
            return None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


class InlineWorkQueue:
    """In-process work queue with an independent worker pool per queue name.

    A slow handler on one queue never occupies the workers of another queue.
    Deferred task ids sit in a timer until due, then join their queue.
    """

    def __init__(self, handler: TaskHandler | None = None, *, workers_per_queue: int = 4) -> None:
        self._handler = handler
        self._workers_per_queue = max(1, int(workers_per_queue))
        self._queues: dict[str, asyncio.Queue[str]] = {}
        self._workers: dict[str, list[asyncio.Task]] = {}
        self._timers: set[asyncio.Task] = set()
        self._closed = False

    def bind(self, handler: TaskHandler) -> None:
        # The dispatcher and the queue reference each other; bind after both exist.
        self._handler = handler

    def _ensure_queue(self, queue_name: str) -> asyncio.Queue[str]:
        queue = self._queues.get(queue_name)
        if queue is not None:
            return queue
        queue = asyncio.Queue()
        self._queues[queue_name] = queue
        self._workers[queue_name] = [
            asyncio.create_task(self._worker(queue_name, queue), name=f"inline:{queue_name}:{idx}")
            for idx in range(self._workers_per_queue)
        ]
        return queue

    async def _worker(self, queue_name: str, queue: asyncio.Queue[str]) -> None:
        while True:
            task_id = await queue.get()
            try:
                if self._handler is not None:
                    await self._handler(task_id)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001 - one failed task must not stop the pool
                logger.exception("inline_task_failed queue=%s task_id=%s", queue_name, task_id)
            finally:
                queue.task_done()

    async def _deferred_put(self, queue_name: str, task_id: str, delay_s: float) -> None:
        await asyncio.sleep(delay_s)
        if not self._closed:
            self._ensure_queue(queue_name).put_nowait(task_id)

    async def enqueue(self, task_id: str, *, queue_name: str, defer_ms: int = 0) -> bool:
        if self._closed:
            return False
        if defer_ms > 0:
            timer = asyncio.create_task(self._deferred_put(queue_name, task_id, defer_ms / 1000.0))
            self._timers.add(timer)
            timer.add_done_callback(self._timers.discard)
            return True
        self._ensure_queue(queue_name).put_nowait(task_id)
        return True

    async def depth(self, queue_name: str) -> int | None:
        queue = self._queues.get(queue_name)
        return queue.qsize() if queue is not None else 0

    def queue_names(self) -> list[str]:
        return sorted(self._queues)

    async def drain(self) -> None:
        # Wait until every deferred and queued task id has been handled, including retries they schedule.
        while True:
            if self._timers:
                await asyncio.gather(*list(self._timers), return_exceptions=True)
            for queue in list(self._queues.values()):
                await queue.join()
            if not self._timers and all(queue.empty() for queue in self._queues.values()):
                return

    async def close(self) -> None:
        self._closed = True
        for timer in list(self._timers):
            timer.cancel()
        workers = [worker for pool in self._workers.values() for worker in pool]
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, *self._timers, return_exceptions=True)
        self._workers.clear()
        self._queues.clear()
        self._timers.clear()
