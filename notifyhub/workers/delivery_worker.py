from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from notifyhub.core.config import get_settings
from notifyhub.core.logging import configure_logging
from notifyhub.domain.delivery import Channel, Priority, queue_name_for
from notifyhub.services.delivery.runtime import DeliveryRuntime, build_runtime


logger = logging.getLogger(__name__)


async def execute_delivery_task(ctx, task_id: str) -> str:
    # Run one attempt; retries are re-enqueued by the dispatcher, not by arq.
    runtime: DeliveryRuntime = ctx["runtime"]
    outcome = await runtime.dispatcher.execute(task_id)
    if outcome.skipped:
        return f"skipped:{outcome.skipped}"
    return outcome.status.value if outcome.status else "missing"


async def _sweep_loop(runtime: DeliveryRuntime) -> None:
    # Re-enqueue due tasks on a fixed cadence to recover from lost jobs and queue outages.
    settings = runtime.settings
    interval_s = max(1, int(settings.sweep_interval_s))
    batch = max(1, int(settings.sweep_batch_size))
    while True:
        try:
            await runtime.dispatcher.requeue_due(limit=batch)
        except Exception:  # noqa: BLE001 - keep the sweep alive while surfacing failures in worker logs.
            logger.exception("delivery due-task sweep failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    runtime = await build_runtime(get_settings())
    ctx["runtime"] = runtime
    if runtime.settings.worker_run_sweep:
        ctx["sweep_task"] = asyncio.create_task(_sweep_loop(runtime))


async def _shutdown(ctx) -> None:
    task = ctx.get("sweep_task")
    if task:
        task.cancel()
    runtime: DeliveryRuntime | None = ctx.get("runtime")
    if runtime is not None:
        await runtime.close()


def all_queue_names(prefix: str) -> list[str]:
    return [queue_name_for(prefix, channel, priority) for channel in Channel for priority in Priority]


class WorkerSettings:
    # Class attributes for the arq CLI; scripts/delivery_worker.py overrides queue_name per process.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = queue_name_for(settings.queue_prefix, Channel.IN_APP, Priority.URGENT)
    max_tries = 1
    job_timeout = max(1, int(settings.transport_timeout_ms / 1000) + int(settings.lease_ttl_margin_s) + 5)
    functions = [execute_delivery_task]
    on_startup = _startup
    on_shutdown = _shutdown
