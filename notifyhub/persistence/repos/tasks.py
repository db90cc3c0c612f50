from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyhub.domain.delivery import Channel, DeliveryAttempt, DeliveryTask, Priority, TaskStatus
from notifyhub.domain.models import DeliveryAttemptRow, DeliveryTaskRow


_ROW_FIELDS = {
    "status",
    "attempt_count",
    "retry_budget",
    "cancel_requested",
    "last_error",
    "provider_message_id",
    "provider_timestamp",
    "last_attempt_at",
    "next_retry_at",
    "updated_at",
    "payload",
}


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every timestamp here is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_domain(row: DeliveryTaskRow) -> DeliveryTask:
    return DeliveryTask(
        id=row.id,
        tenant_id=row.tenant_id,
        message_id=row.message_id,
        notification_type=row.notification_type,
        channel=Channel(row.channel),
        payload=dict(row.payload_json or {}),
        priority=Priority(row.priority),
        queue_name=row.queue_name,
        retry_budget=int(row.retry_budget),
        status=TaskStatus(row.status),
        created_at=_aware(row.created_at),
        next_retry_at=_aware(row.next_retry_at),
        attempt_count=int(row.attempt_count or 0),
        generation=int(row.generation or 0),
        last_attempt_at=_aware(row.last_attempt_at),
        last_error=row.last_error,
        provider_message_id=row.provider_message_id,
        provider_timestamp=row.provider_timestamp,
        cancel_requested=bool(row.cancel_requested),
        updated_at=_aware(row.updated_at),
    )


def _row_values(changes: dict[str, Any]) -> dict[str, Any]:
    unknown = set(changes) - _ROW_FIELDS
    if unknown:
        raise ValueError(f"unsupported task fields: {sorted(unknown)}")
    values: dict[str, Any] = {}
    for name, value in changes.items():
        if name == "payload":
            values["payload_json"] = value
        elif name == "status":
            values["status"] = TaskStatus(value).value
        else:
            values[name] = value
    return values


async def insert_task(session: AsyncSession, task: DeliveryTask) -> DeliveryTaskRow:
    row = DeliveryTaskRow(
        id=task.id,
        tenant_id=task.tenant_id,
        message_id=task.message_id,
        notification_type=task.notification_type,
        channel=task.channel.value,
        delivery_key=task.key.render(),
        generation=task.generation,
        payload_json=task.payload,
        priority=task.priority.value,
        queue_name=task.queue_name,
        status=task.status.value,
        attempt_count=task.attempt_count,
        retry_budget=task.retry_budget,
        cancel_requested=task.cancel_requested,
        last_error=task.last_error,
        created_at=task.created_at,
        next_retry_at=task.next_retry_at,
        updated_at=task.updated_at or task.created_at,
    )
    session.add(row)
    return row


async def get_task_row(session: AsyncSession, task_id: str) -> DeliveryTaskRow | None:
    result = await session.execute(select(DeliveryTaskRow).where(DeliveryTaskRow.id == task_id))
    return result.scalar_one_or_none()


async def get_task_row_by_key(session: AsyncSession, delivery_key: str) -> DeliveryTaskRow | None:
    result = await session.execute(
        select(DeliveryTaskRow).where(DeliveryTaskRow.delivery_key == delivery_key)
    )
    return result.scalar_one_or_none()


class SqlTaskStore:
    """Task store backed by the ``delivery_tasks`` and ``delivery_attempts`` tables."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def create(self, task: DeliveryTask) -> tuple[DeliveryTask, bool]:
        # The unique delivery key makes concurrent creates for one key resolve to a single row.
        async with self._sessionmaker() as session:
            row = await insert_task(session, task)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await get_task_row_by_key(session, task.key.render())
                if existing is None:
                    raise
                return _to_domain(existing), False
            await session.refresh(row)
            return _to_domain(row), True

    async def get(self, task_id: str) -> DeliveryTask | None:
        async with self._sessionmaker() as session:
            row = await get_task_row(session, task_id)
            return _to_domain(row) if row is not None else None

    async def get_by_key(self, delivery_key: str) -> DeliveryTask | None:
        async with self._sessionmaker() as session:
            row = await get_task_row_by_key(session, delivery_key)
            return _to_domain(row) if row is not None else None

    async def transition(
        self,
        task_id: str,
        *,
        expected: Iterable[TaskStatus],
        expected_attempt_count: int | None = None,
        **changes: Any,
    ) -> DeliveryTask | None:
        # Conditional UPDATE on the current status; zero rows means another worker moved it first.
        statuses = [TaskStatus(status).value for status in expected]
        values = _row_values(changes)
        stmt = update(DeliveryTaskRow).where(DeliveryTaskRow.id == task_id, DeliveryTaskRow.status.in_(statuses))
        if expected_attempt_count is not None:
            stmt = stmt.where(DeliveryTaskRow.attempt_count == expected_attempt_count)
        async with self._sessionmaker() as session:
            result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
            row = await get_task_row(session, task_id)
            return _to_domain(row) if row is not None else None

    async def request_cancel(self, task_id: str) -> DeliveryTask | None:
        terminal = [TaskStatus.SUCCEEDED.value, TaskStatus.ABANDONED.value]
        async with self._sessionmaker() as session:
            await session.execute(
                update(DeliveryTaskRow)
                .where(DeliveryTaskRow.id == task_id, DeliveryTaskRow.status.not_in(terminal))
                .values(cancel_requested=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            row = await get_task_row(session, task_id)
            return _to_domain(row) if row is not None else None

    async def list_due(
        self, *, now: datetime, limit: int, updated_before: datetime | None = None
    ) -> list[DeliveryTask]:
        stmt = select(DeliveryTaskRow).where(
            DeliveryTaskRow.status == TaskStatus.PENDING.value,
            DeliveryTaskRow.next_retry_at <= now,
        )
        if updated_before is not None:
            stmt = stmt.where(DeliveryTaskRow.updated_at <= updated_before)
        async with self._sessionmaker() as session:
            result = await session.execute(
                stmt.order_by(DeliveryTaskRow.next_retry_at.asc(), DeliveryTaskRow.created_at.asc()).limit(
                    max(1, limit)
                )
            )
            return [_to_domain(row) for row in result.scalars().all()]

    async def list_tasks(
        self,
        *,
        tenant_id: str | None = None,
        status: TaskStatus | None = None,
        message_id: str | None = None,
        limit: int = 50,
    ) -> list[DeliveryTask]:
        stmt = select(DeliveryTaskRow)
        if tenant_id is not None:
            stmt = stmt.where(DeliveryTaskRow.tenant_id == tenant_id)
        if status is not None:
            stmt = stmt.where(DeliveryTaskRow.status == TaskStatus(status).value)
        if message_id is not None:
            stmt = stmt.where(DeliveryTaskRow.message_id == message_id)
        async with self._sessionmaker() as session:
            result = await session.execute(
                stmt.order_by(DeliveryTaskRow.created_at.desc(), DeliveryTaskRow.id).limit(max(1, limit))
            )
            return [_to_domain(row) for row in result.scalars().all()]

    async def record_attempt(self, attempt: DeliveryAttempt) -> None:
        async with self._sessionmaker() as session:
            session.add(
                DeliveryAttemptRow(
                    task_id=attempt.task_id,
                    attempt_no=attempt.attempt_no,
                    started_at=attempt.started_at,
                    finished_at=attempt.finished_at,
                    outcome=attempt.outcome,
                    error=attempt.error,
                )
            )
            await session.commit()

    async def list_attempts(self, task_id: str) -> list[DeliveryAttempt]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(DeliveryAttemptRow)
                .where(DeliveryAttemptRow.task_id == task_id)
                .order_by(DeliveryAttemptRow.attempt_no.asc())
            )
            return [
                DeliveryAttempt(
                    task_id=row.task_id,
                    attempt_no=int(row.attempt_no),
                    started_at=_aware(row.started_at),
                    finished_at=_aware(row.finished_at),
                    outcome=row.outcome,
                    error=row.error,
                )
                for row in result.scalars().all()
            ]
