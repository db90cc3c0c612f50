from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import logging
import time
from typing import Any
from uuid import uuid4

from notifyhub.core.clock import Clock, utc_now
from notifyhub.core.config import Settings
from notifyhub.core.errors import (
    AdmissionRejected,
    InvalidTaskStateError,
    PolicyError,
    StoreUnavailable,
    TaskNotFoundError,
    TransportError,
    TransportPermanentError,
)
from notifyhub.domain.delivery import (
    Channel,
    ChannelDispatch,
    DeliveryAttempt,
    DeliveryTask,
    NotificationEvent,
    Priority,
    TaskStatus,
    TransportReceipt,
)
from notifyhub.services.dedup import DedupGuard
from notifyhub.services.delivery.queue import WorkQueue
from notifyhub.services.delivery.rate_limit import ChannelRateLimiter
from notifyhub.services.delivery.store import TaskStore
from notifyhub.services.observability import (
    EVENT_ABANDONED,
    EVENT_ENQUEUE_DEGRADED,
    EVENT_RATE_LIMITED,
    EVENT_STATE_CHANGED,
    ObservabilitySink,
)
from notifyhub.services.routing.policy import ChannelPolicy, PolicyProvider, default_policy, validate_policy
from notifyhub.services.scheduling import require_future
from notifyhub.services.telemetry import record_transport_call
from notifyhub.services.transports import TransportRegistry


logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


@dataclass(frozen=True)
class DeliveryOutcome:
    task_id: str
    status: TaskStatus | None
    receipt: TransportReceipt | None = None
    error: Exception | None = None
    # Set when execute returned without calling the transport.
    skipped: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED


def retry_backoff_ms(
    *,
    task_id: str,
    attempt_no: int,
    strategy: str = "exponential",
    base_ms: int = 1000,
    cap_ms: int = 300000,
) -> int:
    # Exponential backoff with deterministic jitter keyed on the task, or a fixed delay.
    base = max(0, int(base_ms))
    if strategy == "fixed" or base == 0:
        return base
    cap = max(base, int(cap_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{task_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)


def _ms_until(target: datetime, now: datetime) -> int:
    return max(0, int((target - now).total_seconds() * 1000))


class DeliveryDispatcher:
    """Create delivery tasks, hand them to the work queue and execute them.

    Task lifecycle: pending -> in_flight -> succeeded, or failed -> pending
    (retry) / abandoned. Execution holds a lease on the task's delivery key for
    the whole transport call, so a key is never in flight twice.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        queue: WorkQueue,
        guard: DedupGuard,
        transports: TransportRegistry,
        settings: Settings,
        sink: ObservabilitySink,
        policies: PolicyProvider | None = None,
        rate_limiter: ChannelRateLimiter | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._guard = guard
        self._transports = transports
        self._settings = settings
        self._sink = sink
        self._policies = policies
        self._rate_limiter = rate_limiter
        self._clock = clock or utc_now

    @property
    def store(self) -> TaskStore:
        return self._store

    def _policy_for(self, task: DeliveryTask) -> ChannelPolicy:
        # Backoff and rate limits follow the current policy; a broken policy falls back to defaults.
        if self._policies is None:
            return default_policy(self._settings)
        try:
            policy = self._policies.get_policy(task.tenant_id, task.notification_type)
            validate_policy(policy)
        except PolicyError as exc:
            logger.warning("policy_fallback task_id=%s error=%s", task.id, exc)
            return default_policy(self._settings)
        return policy

    def _timeout_s(self, channel: Channel) -> float:
        timeout_ms = self._settings.in_app_timeout_ms if channel == Channel.IN_APP else self._settings.transport_timeout_ms
        return max(0.05, timeout_ms / 1000.0)

    def _lease_ttl_s(self, channel: Channel) -> float:
        return self._timeout_s(channel) + max(1, int(self._settings.lease_ttl_margin_s))

    def _backoff_ms(self, task: DeliveryTask, policy: ChannelPolicy, attempt_no: int) -> int:
        return retry_backoff_ms(
            task_id=task.id,
            attempt_no=attempt_no,
            strategy=policy.backoff_strategy,
            base_ms=policy.backoff_ms,
            cap_ms=self._settings.delivery_backoff_max_ms,
        )

    def _emit_transition(
        self,
        task: DeliveryTask,
        from_status: TaskStatus | None,
        **fields: Any,
    ) -> None:
        self._sink.emit(
            EVENT_STATE_CHANGED,
            task_id=task.id,
            key=task.key.render(),
            tenant_id=task.tenant_id,
            channel=task.channel.value,
            from_status=from_status.value if from_status else None,
            to_status=task.status.value,
            attempt=task.attempt_count,
            **fields,
        )

    def _emit_abandoned(self, task: DeliveryTask, *, reason: str | None) -> None:
        self._sink.emit(
            EVENT_ABANDONED,
            task_id=task.id,
            key=task.key.render(),
            tenant_id=task.tenant_id,
            channel=task.channel.value,
            attempts=task.attempt_count,
            retry_budget=task.retry_budget,
            reason=reason,
            error=task.last_error,
        )

    async def _push(self, task: DeliveryTask, *, defer_ms: int = 0) -> bool:
        queued = await self._queue.enqueue(task.id, queue_name=task.queue_name, defer_ms=defer_ms)
        if not queued:
            # The task stays pending in the store; the due-task sweep picks it up.
            self._sink.emit(
                EVENT_ENQUEUE_DEGRADED,
                task_id=task.id,
                channel=task.channel.value,
                queue=task.queue_name,
            )
        return queued

    async def enqueue(
        self,
        dispatch: ChannelDispatch,
        event: NotificationEvent,
        *,
        policy: ChannelPolicy,
    ) -> str:
        """Create the pending task for one routed channel and queue it; returns the task id.

        Idempotent on the delivery key: a repeat returns the existing task id
        without queueing it again. Never waits for the delivery outcome.
        """
        now = self._clock()
        # Scheduled sends start from the scheduled time; delays and quiet hours apply on top.
        start = event.scheduled_at if event.scheduled_at is not None and event.scheduled_at > now else now
        send_at = start + timedelta(milliseconds=max(0, int(dispatch.delay_ms)))
        if policy.quiet_hours is not None and dispatch.priority != Priority.URGENT:
            quiet_until = policy.quiet_hours.window_end(start)
            if quiet_until is not None and quiet_until > send_at:
                send_at = quiet_until
        defer_ms = _ms_until(send_at, now)
        candidate = DeliveryTask(
            id=uuid4().hex,
            tenant_id=event.tenant_id,
            message_id=event.message_id,
            notification_type=event.notification_type,
            channel=dispatch.channel,
            payload=dict(event.payload),
            priority=dispatch.priority,
            queue_name=dispatch.queue_name,
            retry_budget=int(policy.retry_budget),
            status=TaskStatus.PENDING,
            created_at=now,
            next_retry_at=now + timedelta(milliseconds=defer_ms),
            updated_at=now,
        )
        task, created = await self._store.create(candidate)
        if not created:
            logger.info("delivery_task_exists task_id=%s key=%s", task.id, task.key.render())
            return task.id
        self._emit_transition(task, None, queue=task.queue_name, defer_ms=defer_ms or None)
        await self._push(task, defer_ms=defer_ms)
        return task.id

    async def execute(self, task_id: str) -> DeliveryOutcome:
        """Run one delivery attempt for a queued task and persist the result."""
        task = await self._store.get(task_id)
        skipped = await self._check_runnable(task_id, task)
        if skipped is not None:
            return skipped

        policy = self._policy_for(task)
        try:
            async with self._guard.lease(task.key, self._lease_ttl_s(task.channel)) as admission:
                if not admission.admitted:
                    return DeliveryOutcome(
                        task_id=task_id,
                        status=task.status,
                        error=AdmissionRejected(task.key.render()),
                        skipped="duplicate",
                    )
                # Another job may have run an attempt between the first read and the lease.
                current = await self._store.get(task_id)
                skipped = await self._check_runnable(task_id, current)
                if skipped is not None:
                    return skipped
                return await self._execute_leased(current, policy)
        except StoreUnavailable as exc:
            return await self._defer_store_unavailable(task, policy, exc)

    async def _check_runnable(self, task_id: str, task: DeliveryTask | None) -> DeliveryOutcome | None:
        # None means the task is pending, due and not cancelled.
        if task is None:
            return DeliveryOutcome(task_id=task_id, status=None, skipped="missing")
        if task.is_terminal:
            return DeliveryOutcome(task_id=task_id, status=task.status, skipped="terminal")
        if task.status != TaskStatus.PENDING:
            return DeliveryOutcome(task_id=task_id, status=task.status, skipped="not_pending")
        now = self._clock()
        if task.next_retry_at > now:
            # Early delivery from the queue; put it back for when it is due.
            await self._push(task, defer_ms=_ms_until(task.next_retry_at, now))
            return DeliveryOutcome(task_id=task_id, status=task.status, skipped="not_due")
        if task.cancel_requested:
            return await self._abandon_cancelled(task)
        return None

    async def _abandon_cancelled(self, task: DeliveryTask) -> DeliveryOutcome:
        now = self._clock()
        updated = await self._store.transition(
            task.id,
            expected=[TaskStatus.PENDING, TaskStatus.FAILED],
            status=TaskStatus.ABANDONED,
            last_error=CANCELLED_REASON,
            cancel_requested=True,
            updated_at=now,
        )
        if updated is None:
            current = await self._store.get(task.id)
            return DeliveryOutcome(task_id=task.id, status=current.status if current else None, skipped="claim_lost")
        self._emit_transition(updated, task.status, reason=CANCELLED_REASON)
        return DeliveryOutcome(task_id=task.id, status=updated.status, skipped=CANCELLED_REASON)

    async def _defer_store_unavailable(
        self, task: DeliveryTask, policy: ChannelPolicy, exc: StoreUnavailable
    ) -> DeliveryOutcome:
        # Fail-closed channel: keep the task pending, push it back, spend no attempt.
        now = self._clock()
        delay_ms = self._backoff_ms(task, policy, task.attempt_count + 1)
        updated = await self._store.transition(
            task.id,
            expected=[TaskStatus.PENDING],
            next_retry_at=now + timedelta(milliseconds=delay_ms),
            last_error="store_unavailable",
            updated_at=now,
        )
        if updated is not None:
            await self._push(updated, defer_ms=delay_ms)
        return DeliveryOutcome(task_id=task.id, status=TaskStatus.PENDING, error=exc, skipped="store_unavailable")

    async def _execute_leased(self, task: DeliveryTask, policy: ChannelPolicy) -> DeliveryOutcome:
        now = self._clock()
        limit = policy.rate_limits.get(task.channel.value)
        if limit is not None and self._rate_limiter is not None:
            decision = await self._rate_limiter.check(
                tenant_id=task.tenant_id, channel=task.channel.value, limit=int(limit), now=now
            )
            if not decision.allowed:
                deferred = await self._store.transition(
                    task.id,
                    expected=[TaskStatus.PENDING],
                    next_retry_at=now + timedelta(milliseconds=decision.retry_after_ms),
                    updated_at=now,
                )
                self._sink.emit(
                    EVENT_RATE_LIMITED,
                    task_id=task.id,
                    tenant_id=task.tenant_id,
                    channel=task.channel.value,
                    limit=limit,
                    retry_after_ms=decision.retry_after_ms,
                )
                if deferred is not None:
                    await self._push(deferred, defer_ms=decision.retry_after_ms)
                return DeliveryOutcome(task_id=task.id, status=TaskStatus.PENDING, skipped="rate_limited")

        claimed = await self._store.transition(
            task.id,
            expected=[TaskStatus.PENDING],
            expected_attempt_count=task.attempt_count,
            status=TaskStatus.IN_FLIGHT,
            attempt_count=task.attempt_count + 1,
            last_attempt_at=now,
            updated_at=now,
        )
        if claimed is None:
            current = await self._store.get(task.id)
            return DeliveryOutcome(task_id=task.id, status=current.status if current else None, skipped="claim_lost")
        self._emit_transition(claimed, TaskStatus.PENDING)

        receipt, error = await self._call_transport(claimed)
        if error is None:
            return await self._complete(claimed, receipt)
        if isinstance(error, TransportPermanentError):
            return await self._abandon(claimed, error, expected=TaskStatus.IN_FLIGHT)
        return await self._fail(claimed, error, policy)

    async def _call_transport(self, task: DeliveryTask) -> tuple[TransportReceipt | None, Exception | None]:
        # One bounded transport call; every outcome is recorded as an attempt row.
        transport = self._transports.get(task.channel)
        started_at = self._clock()
        started = time.monotonic()
        receipt: TransportReceipt | None = None
        error: Exception | None = None
        try:
            receipt = await asyncio.wait_for(transport.send(task), timeout=self._timeout_s(task.channel))
        except asyncio.TimeoutError:
            error = TransportError(
                f"{task.channel.value} transport timed out after {self._timeout_s(task.channel):.2f}s",
                reason="timeout",
            )
        except (TransportError, TransportPermanentError) as exc:
            error = exc
        except Exception as exc:  # noqa: BLE001 - unexpected transport bugs count as transient failures
            logger.exception("transport_unexpected_error task_id=%s channel=%s", task.id, task.channel.value)
            error = TransportError(f"unexpected transport error: {exc}", reason="unexpected_error")
        latency_ms = (time.monotonic() - started) * 1000.0
        record_transport_call(channel=task.channel.value, latency_ms=latency_ms, success=error is None)
        if error is None:
            outcome = "succeeded"
        elif isinstance(error, TransportPermanentError):
            outcome = "permanent_error"
        else:
            outcome = "transient_error"
        await self._store.record_attempt(
            DeliveryAttempt(
                task_id=task.id,
                attempt_no=task.attempt_count,
                started_at=started_at,
                finished_at=self._clock(),
                outcome=outcome,
                error=str(error) if error is not None else None,
            )
        )
        return receipt, error

    async def _complete(self, task: DeliveryTask, receipt: TransportReceipt | None) -> DeliveryOutcome:
        now = self._clock()
        updated = await self._store.transition(
            task.id,
            expected=[TaskStatus.IN_FLIGHT],
            status=TaskStatus.SUCCEEDED,
            provider_message_id=receipt.provider_message_id if receipt else None,
            provider_timestamp=receipt.provider_timestamp if receipt else None,
            last_error=None,
            updated_at=now,
        )
        if updated is None:
            raise InvalidTaskStateError(f"task {task.id} left in_flight during delivery")
        self._emit_transition(updated, TaskStatus.IN_FLIGHT, provider_message_id=updated.provider_message_id)
        return DeliveryOutcome(task_id=task.id, status=updated.status, receipt=receipt)

    async def _abandon(self, task: DeliveryTask, error: Exception, *, expected: TaskStatus) -> DeliveryOutcome:
        now = self._clock()
        updated = await self._store.transition(
            task.id,
            expected=[expected],
            status=TaskStatus.ABANDONED,
            last_error=str(error),
            updated_at=now,
        )
        if updated is None:
            raise InvalidTaskStateError(f"task {task.id} changed state before abandonment")
        reason = getattr(error, "reason", None)
        self._emit_transition(updated, expected, reason=reason)
        self._emit_abandoned(updated, reason=reason)
        return DeliveryOutcome(task_id=task.id, status=updated.status, error=error)

    async def _fail(self, task: DeliveryTask, error: Exception, policy: ChannelPolicy) -> DeliveryOutcome:
        now = self._clock()
        failed = await self._store.transition(
            task.id,
            expected=[TaskStatus.IN_FLIGHT],
            status=TaskStatus.FAILED,
            last_error=str(error),
            updated_at=now,
        )
        if failed is None:
            raise InvalidTaskStateError(f"task {task.id} left in_flight during delivery")
        self._emit_transition(failed, TaskStatus.IN_FLIGHT, reason=getattr(error, "reason", None))
        return await self._retry_or_abandon(failed, error, policy)

    async def _retry_or_abandon(
        self, failed: DeliveryTask, error: Exception, policy: ChannelPolicy
    ) -> DeliveryOutcome:
        # Cancellation requested while in flight is honoured here, between attempts.
        if failed.cancel_requested:
            return await self._abandon_cancelled(failed)
        if failed.attempt_count >= failed.retry_budget:
            return await self._abandon(failed, error, expected=TaskStatus.FAILED)
        now = self._clock()
        delay_ms = self._backoff_ms(failed, policy, failed.attempt_count)
        retrying = await self._store.transition(
            failed.id,
            expected=[TaskStatus.FAILED],
            status=TaskStatus.PENDING,
            next_retry_at=now + timedelta(milliseconds=delay_ms),
            updated_at=now,
        )
        if retrying is None:
            current = await self._store.get(failed.id)
            return DeliveryOutcome(
                task_id=failed.id, status=current.status if current else None, error=error, skipped="claim_lost"
            )
        self._emit_transition(retrying, TaskStatus.FAILED, retry_in_ms=delay_ms)
        await self._push(retrying, defer_ms=delay_ms)
        return DeliveryOutcome(task_id=failed.id, status=retrying.status, error=error)

    async def cancel(self, task_id: str) -> DeliveryTask:
        """Cancel a task: pending is abandoned at once, in-flight finishes its current attempt."""
        task = await self._store.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"delivery task {task_id} not found")
        if task.is_terminal:
            return task
        if task.status == TaskStatus.PENDING:
            now = self._clock()
            updated = await self._store.transition(
                task_id,
                expected=[TaskStatus.PENDING],
                status=TaskStatus.ABANDONED,
                last_error=CANCELLED_REASON,
                cancel_requested=True,
                updated_at=now,
            )
            if updated is not None:
                self._emit_transition(updated, TaskStatus.PENDING, reason=CANCELLED_REASON)
                return updated
        flagged = await self._store.request_cancel(task_id)
        if flagged is None:
            raise TaskNotFoundError(f"delivery task {task_id} not found")
        return flagged

    async def reschedule(self, task_id: str, scheduled_at: datetime) -> DeliveryTask:
        """Move the send time of a task that has not been attempted yet."""
        task = await self._store.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"delivery task {task_id} not found")
        now = self._clock()
        require_future(scheduled_at, now)
        if task.status != TaskStatus.PENDING or task.attempt_count:
            raise InvalidTaskStateError(
                f"only pending tasks without attempts can be rescheduled (status={task.status.value})"
            )
        updated = await self._store.transition(
            task_id,
            expected=[TaskStatus.PENDING],
            expected_attempt_count=0,
            next_retry_at=scheduled_at,
            updated_at=now,
        )
        if updated is None:
            raise InvalidTaskStateError(f"task {task_id} changed state before it could be rescheduled")
        self._emit_transition(updated, TaskStatus.PENDING, rescheduled_to=scheduled_at.isoformat())
        # Jobs queued for the old time find the task not yet due and re-queue themselves.
        await self._push(updated, defer_ms=_ms_until(scheduled_at, now))
        return updated

    async def replay(self, task_id: str) -> DeliveryTask:
        """Spawn the next generation of an abandoned task with a fresh retry budget."""
        task = await self._store.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"delivery task {task_id} not found")
        if task.status != TaskStatus.ABANDONED:
            raise InvalidTaskStateError(f"only abandoned tasks can be replayed (status={task.status.value})")
        now = self._clock()
        replayed, created = await self._store.create(
            DeliveryTask(
                id=uuid4().hex,
                tenant_id=task.tenant_id,
                message_id=task.message_id,
                notification_type=task.notification_type,
                channel=task.channel,
                payload=dict(task.payload),
                priority=task.priority,
                queue_name=task.queue_name,
                retry_budget=task.retry_budget,
                status=TaskStatus.PENDING,
                created_at=now,
                next_retry_at=now,
                generation=task.generation + 1,
                updated_at=now,
            )
        )
        if created:
            self._emit_transition(replayed, None, replay_of=task.id)
            await self._push(replayed)
        return replayed

    async def requeue_due(self, *, limit: int = 100) -> int:
        """Re-enqueue due pending tasks that have not been touched for a sweep interval."""
        now = self._clock()
        stale_cutoff = now - timedelta(seconds=max(1, int(self._settings.sweep_interval_s)))
        await self._reclaim_stale_in_flight(now=now, limit=limit)
        await self._reclaim_stale_failed(stale_cutoff=stale_cutoff, limit=limit)
        tasks = await self._store.list_due(now=now, limit=limit, updated_before=stale_cutoff)
        count = 0
        for task in tasks:
            touched = await self._store.transition(task.id, expected=[TaskStatus.PENDING], updated_at=now)
            if touched is None:
                continue
            if await self._queue.enqueue(task.id, queue_name=task.queue_name):
                count += 1
        if count:
            logger.info("requeued_due_tasks count=%s", count)
        return count

    async def _reclaim_stale_in_flight(self, *, now: datetime, limit: int) -> None:
        # A worker that died mid-call leaves the task in_flight; once its lease has surely
        # expired, count the attempt as a transient failure.
        for task in await self._store.list_tasks(status=TaskStatus.IN_FLIGHT, limit=limit):
            started = task.last_attempt_at or task.updated_at or task.created_at
            if now - started < timedelta(seconds=self._lease_ttl_s(task.channel)):
                continue
            error = TransportError("worker lost during delivery", reason="worker_lost")
            failed = await self._store.transition(
                task.id,
                expected=[TaskStatus.IN_FLIGHT],
                status=TaskStatus.FAILED,
                last_error=str(error),
                updated_at=now,
            )
            if failed is None:
                continue
            self._emit_transition(failed, TaskStatus.IN_FLIGHT, reason=error.reason)
            await self._retry_or_abandon(failed, error, self._policy_for(failed))

    async def _reclaim_stale_failed(self, *, stale_cutoff: datetime, limit: int) -> None:
        # A worker that died between recording the failure and scheduling the retry leaves the
        # task failed; finish that step for it.
        for task in await self._store.list_tasks(status=TaskStatus.FAILED, limit=limit):
            if (task.updated_at or task.created_at) > stale_cutoff:
                continue
            error = TransportError(task.last_error or "delivery failed", reason="retry_not_scheduled")
            logger.warning("reclaim_failed_task task_id=%s attempt=%s", task.id, task.attempt_count)
            await self._retry_or_abandon(task, error, self._policy_for(task))
