from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyhub.core.clock import Clock
from notifyhub.core.config import Settings
from notifyhub.services.dedup import DedupGuard, InMemoryLeaseStore, LeaseStore, RedisLeaseStore
from notifyhub.services.delivery.dispatcher import DeliveryDispatcher
from notifyhub.services.delivery.queue import ArqWorkQueue, InlineWorkQueue, WorkQueue
from notifyhub.services.delivery.rate_limit import (
    ChannelRateLimiter,
    InMemoryChannelRateLimiter,
    RedisChannelRateLimiter,
)
from notifyhub.services.delivery.store import InMemoryTaskStore, TaskStore
from notifyhub.services.notifications.intake import IntakeService
from notifyhub.services.notifications.templates import TemplateRegistry
from notifyhub.services.observability import LoggingSink, ObservabilitySink
from notifyhub.services.resilience import get_shared_redis
from notifyhub.services.routing import PolicyProvider, StaticPolicyProvider
from notifyhub.services.transports import TransportRegistry, build_transports


logger = logging.getLogger(__name__)


@dataclass
class DeliveryRuntime:
    settings: Settings
    store: TaskStore
    queue: WorkQueue
    guard: DedupGuard
    policies: PolicyProvider
    transports: TransportRegistry
    dispatcher: DeliveryDispatcher
    intake: IntakeService
    templates: TemplateRegistry
    sink: ObservabilitySink

    async def close(self) -> None:
        await self.queue.close()


def _is_local_mode(settings: Settings) -> bool:
    # Inline queue plus in-memory tasks needs no Redis or database at all.
    return (
        settings.delivery_execution_mode.lower() == "inline"
        and settings.task_store_backend.lower() == "memory"
    )


def _build_store(settings: Settings, sessionmaker: async_sessionmaker[AsyncSession] | None) -> TaskStore:
    backend = settings.task_store_backend.lower()
    if backend == "memory":
        return InMemoryTaskStore()
    if backend != "sql":
        raise ValueError(f"unsupported task store backend: {settings.task_store_backend}")
    from notifyhub.persistence.repos.tasks import SqlTaskStore

    if sessionmaker is None:
        # Import lazily: the module creates the engine at import time.
        from notifyhub.persistence.db import SessionLocal

        sessionmaker = SessionLocal
    return SqlTaskStore(sessionmaker)


def _build_queue(settings: Settings) -> WorkQueue:
    mode = settings.delivery_execution_mode.lower()
    if mode == "inline":
        return InlineWorkQueue(workers_per_queue=settings.inline_workers_per_queue)
    if mode != "arq":
        raise ValueError(f"unsupported delivery execution mode: {settings.delivery_execution_mode}")
    return ArqWorkQueue(settings.redis_url)


async def build_runtime(
    settings: Settings,
    *,
    redis: Redis | Any | None = None,
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    store: TaskStore | None = None,
    queue: WorkQueue | None = None,
    lease_store: LeaseStore | None = None,
    transports: TransportRegistry | None = None,
    policies: PolicyProvider | None = None,
    templates: TemplateRegistry | None = None,
    rate_limiter: ChannelRateLimiter | None = None,
    sink: ObservabilitySink | None = None,
    clock: Clock | None = None,
) -> DeliveryRuntime:
    """Wire the delivery pipeline from settings; any collaborator can be injected."""
    if redis is None and not _is_local_mode(settings):
        redis = await get_shared_redis()
    sink = sink or LoggingSink()
    if lease_store is None:
        lease_store = (
            RedisLeaseStore(redis, prefix=settings.lease_redis_prefix) if redis is not None else InMemoryLeaseStore()
        )
    if rate_limiter is None:
        rate_limiter = (
            RedisChannelRateLimiter(redis, prefix=settings.rate_limit_redis_prefix)
            if redis is not None
            else InMemoryChannelRateLimiter()
        )
    store = store or _build_store(settings, sessionmaker)
    queue = queue or _build_queue(settings)
    transports = transports or build_transports(settings, redis=redis)
    policies = policies or StaticPolicyProvider.from_settings(settings)
    templates = templates or TemplateRegistry.from_settings(settings)
    guard = DedupGuard(
        lease_store,
        fail_closed_channels=settings.dedup_fail_closed_channels,
        default_ttl_s=float(settings.intake_lease_ttl_s),
        clock=clock,
        sink=sink,
    )
    dispatcher = DeliveryDispatcher(
        store=store,
        queue=queue,
        guard=guard,
        transports=transports,
        settings=settings,
        sink=sink,
        policies=policies,
        rate_limiter=rate_limiter,
        clock=clock,
    )
    if isinstance(queue, InlineWorkQueue):
        queue.bind(dispatcher.execute)
    intake = IntakeService(
        guard=guard,
        policies=policies,
        dispatcher=dispatcher,
        settings=settings,
        sink=sink,
        templates=templates,
        clock=clock,
    )
    logger.info(
        "delivery_runtime_ready mode=%s store=%s redis=%s",
        settings.delivery_execution_mode,
        settings.task_store_backend,
        "yes" if redis is not None else "no",
    )
    return DeliveryRuntime(
        settings=settings,
        store=store,
        queue=queue,
        guard=guard,
        policies=policies,
        transports=transports,
        dispatcher=dispatcher,
        intake=intake,
        templates=templates,
        sink=sink,
    )
