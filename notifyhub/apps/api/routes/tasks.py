from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from notifyhub.apps.api.deps import get_runtime
from notifyhub.apps.api.response import SuccessEnvelope, success_response
from notifyhub.core.errors import ScheduleError
from notifyhub.domain.delivery import DeliveryAttempt, TaskStatus
from notifyhub.services.delivery.runtime import DeliveryRuntime
from notifyhub.services.scheduling import parse_schedule_time


router = APIRouter(prefix="/tasks", tags=["tasks"])


class TaskResponse(BaseModel):
    id: str
    tenant_id: str
    message_id: str
    notification_type: str
    channel: str
    priority: str
    queue_name: str
    status: str
    attempt_count: int
    retry_budget: int
    generation: int
    created_at: datetime
    last_attempt_at: datetime | None
    next_retry_at: datetime
    last_error: str | None
    provider_message_id: str | None
    provider_timestamp: str | None
    cancel_requested: bool


class AttemptResponse(BaseModel):
    attempt_no: int
    started_at: datetime
    finished_at: datetime | None
    outcome: str
    error: str | None


class TaskDetailResponse(TaskResponse):
    attempts: list[AttemptResponse]


class RescheduleRequest(BaseModel):
    scheduled_at: str
    timezone: str | None = None


class TaskListResponse(BaseModel):
    items: list[TaskResponse]


def _attempt_payload(attempt: DeliveryAttempt) -> dict[str, Any]:
    return {
        "attempt_no": attempt.attempt_no,
        "started_at": attempt.started_at,
        "finished_at": attempt.finished_at,
        "outcome": attempt.outcome,
        "error": attempt.error,
    }


@router.get("", response_model=SuccessEnvelope[TaskListResponse])
async def list_tasks(
    request: Request,
    tenant_id: str | None = Query(default=None),
    status: TaskStatus | None = Query(default=None),
    message_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    runtime: DeliveryRuntime = Depends(get_runtime),
) -> dict:
    tasks = await runtime.store.list_tasks(tenant_id=tenant_id, status=status, message_id=message_id, limit=limit)
    payload = TaskListResponse(items=[TaskResponse(**task.to_dict()) for task in tasks])
    return success_response(request=request, data=payload)


@router.get("/{task_id}", response_model=SuccessEnvelope[TaskDetailResponse])
async def get_task(
    task_id: str,
    request: Request,
    runtime: DeliveryRuntime = Depends(get_runtime),
) -> dict:
    task = await runtime.store.get(task_id)
    if task is None:
        raise HTTPException(status_code=404, detail={"code": "TASK_NOT_FOUND", "message": "Delivery task not found"})
    attempts = await runtime.store.list_attempts(task_id)
    payload = TaskDetailResponse(
        **task.to_dict(),
        attempts=[AttemptResponse(**_attempt_payload(attempt)) for attempt in attempts],
    )
    return success_response(request=request, data=payload)


@router.post("/{task_id}/cancel", response_model=SuccessEnvelope[TaskResponse])
async def cancel_task(
    task_id: str,
    request: Request,
    runtime: DeliveryRuntime = Depends(get_runtime),
) -> dict:
    # TaskNotFoundError is mapped to 404 by the domain error handler.
    task = await runtime.dispatcher.cancel(task_id)
    return success_response(request=request, data=TaskResponse(**task.to_dict()))


@router.post("/{task_id}/replay", status_code=202, response_model=SuccessEnvelope[TaskResponse])
async def replay_task(
    task_id: str,
    request: Request,
    runtime: DeliveryRuntime = Depends(get_runtime),
) -> dict:
    # TaskNotFoundError is mapped to 404 by the domain error handler.
    task = await runtime.dispatcher.replay(task_id)
    return success_response(request=request, data=TaskResponse(**task.to_dict()))


@router.post("/{task_id}/reschedule", response_model=SuccessEnvelope[TaskResponse])
async def reschedule_task(
    task_id: str,
    payload: RescheduleRequest,
    request: Request,
    runtime: DeliveryRuntime = Depends(get_runtime),
) -> dict:
    # Only a scheduled task that has not been attempted yet can be moved.
    scheduled_at = parse_schedule_time(payload.scheduled_at, payload.timezone)
    if scheduled_at is None:
        raise ScheduleError("scheduled_at is required")
    task = await runtime.dispatcher.reschedule(task_id, scheduled_at)
    return success_response(request=request, data=TaskResponse(**task.to_dict()))
