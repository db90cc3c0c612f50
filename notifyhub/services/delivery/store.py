from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from notifyhub.domain.delivery import DeliveryAttempt, DeliveryTask, TaskStatus


class TaskStore(Protocol):
    """Persistence for delivery tasks.

    Status changes go through ``transition``, a compare-and-set on the current
    status (and optionally the attempt count), so concurrent workers never both
    move a task out of the same state or claim the same attempt twice.
    """

    async def create(self, task: DeliveryTask) -> tuple[DeliveryTask, bool]: ...

    async def get(self, task_id: str) -> DeliveryTask | None: ...

    async def get_by_key(self, delivery_key: str) -> DeliveryTask | None: ...

    async def transition(
        self,
        task_id: str,
        *,
        expected: Iterable[TaskStatus],
        expected_attempt_count: int | None = None,
        **changes: Any,
    ) -> DeliveryTask | None: ...

    async def request_cancel(self, task_id: str) -> DeliveryTask | None: ...

    async def list_due(
        self, *, now: datetime, limit: int, updated_before: datetime | None = None
    ) -> list[DeliveryTask]: ...

    async def list_tasks(
        self,
        *,
        tenant_id: str | None = None,
        status: TaskStatus | None = None,
        message_id: str | None = None,
        limit: int = 50,
    ) -> list[DeliveryTask]: ...

    async def record_attempt(self, attempt: DeliveryAttempt) -> None: ...

    async def list_attempts(self, task_id: str) -> list[DeliveryAttempt]: ...


class InMemoryTaskStore:
    # Process-local store for inline mode and tests; every method completes without awaiting.
    def __init__(self) -> None:
        self._tasks: dict[str, DeliveryTask] = {}
        self._by_key: dict[str, str] = {}
        self._attempts: dict[str, list[DeliveryAttempt]] = {}

    async def create(self, task: DeliveryTask) -> tuple[DeliveryTask, bool]:
        rendered = task.key.render()
        existing_id = self._by_key.get(rendered)
        if existing_id is not None:
            return self._tasks[existing_id], False
        stored = task.evolve(updated_at=task.updated_at or task.created_at)
        self._tasks[task.id] = stored
        self._by_key[rendered] = task.id
        return stored, True

    async def get(self, task_id: str) -> DeliveryTask | None:
        return self._tasks.get(task_id)

    async def get_by_key(self, delivery_key: str) -> DeliveryTask | None:
        task_id = self._by_key.get(delivery_key)
        return self._tasks.get(task_id) if task_id else None

    async def transition(
        self,
        task_id: str,
        *,
        expected: Iterable[TaskStatus],
        expected_attempt_count: int | None = None,
        **changes: Any,
    ) -> DeliveryTask | None:
        task = self._tasks.get(task_id)
        if task is None or task.status not in set(expected):
            return None
        if expected_attempt_count is not None and task.attempt_count != expected_attempt_count:
            return None
        updated = task.evolve(**changes)
        self._tasks[task_id] = updated
        return updated

    async def request_cancel(self, task_id: str) -> DeliveryTask | None:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        if task.is_terminal:
            return task
        updated = task.evolve(cancel_requested=True)
        self._tasks[task_id] = updated
        return updated

    async def list_due(
        self, *, now: datetime, limit: int, updated_before: datetime | None = None
    ) -> list[DeliveryTask]:
        due = [
            task
            for task in self._tasks.values()
            if task.status == TaskStatus.PENDING
            and task.next_retry_at <= now
            and (updated_before is None or (task.updated_at or task.created_at) <= updated_before)
        ]
        due.sort(key=lambda task: (task.next_retry_at, task.created_at))
        return due[: max(1, limit)]

    async def list_tasks(
        self,
        *,
        tenant_id: str | None = None,
        status: TaskStatus | None = None,
        message_id: str | None = None,
        limit: int = 50,
    ) -> list[DeliveryTask]:
        rows = [
            task
            for task in self._tasks.values()
            if (tenant_id is None or task.tenant_id == tenant_id)
            and (status is None or task.status == status)
            and (message_id is None or task.message_id == message_id)
        ]
        rows.sort(key=lambda task: task.created_at, reverse=True)
        return rows[: max(1, limit)]

    async def record_attempt(self, attempt: DeliveryAttempt) -> None:
        self._attempts.setdefault(attempt.task_id, []).append(attempt)

    async def list_attempts(self, task_id: str) -> list[DeliveryAttempt]:
        return sorted(self._attempts.get(task_id, []), key=lambda attempt: attempt.attempt_no)
