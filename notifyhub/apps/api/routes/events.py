from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from notifyhub.apps.api.deps import get_runtime
from notifyhub.apps.api.response import SuccessEnvelope, success_response
from notifyhub.services.delivery.runtime import DeliveryRuntime
from notifyhub.services.notifications.intake import STATUS_ACCEPTED, STATUS_REJECTED


router = APIRouter(tags=["events"])


class EventRequest(BaseModel):
    # Raw upstream event; "type" selects the handler that normalizes "data".
    type: str = Field(min_length=1, max_length=128)
    tenant_id: str = Field(min_length=1, max_length=128)
    data: dict[str, Any] = Field(default_factory=dict)


class EventResponse(BaseModel):
    status: str
    tenant_id: str
    message_id: str
    task_ids: list[str]
    channels: list[str]
    error: str | None = None
    error_code: str | None = None


@router.post("/events", status_code=202, response_model=SuccessEnvelope[EventResponse])
async def submit_event(
    payload: EventRequest,
    request: Request,
    runtime: DeliveryRuntime = Depends(get_runtime),
) -> JSONResponse:
    result = await runtime.intake.submit_raw(payload.type, payload.tenant_id, payload.data)
    if result.status == STATUS_REJECTED:
        raise HTTPException(
            status_code=422,
            detail={
                "code": result.error_code or "POLICY_INVALID",
                "message": result.error or "Event rejected before enqueue",
                "message_id": result.message_id,
            },
        )
    # Duplicates are acknowledged as 200: nothing new was accepted.
    status_code = 202 if result.status == STATUS_ACCEPTED else 200
    return JSONResponse(
        content=success_response(request=request, data=EventResponse(**result.to_dict())),
        status_code=status_code,
    )
