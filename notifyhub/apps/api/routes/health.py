from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from notifyhub.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    runtime_ready: bool


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok", runtime_ready=getattr(request.app.state, "runtime", None) is not None)
    return success_response(request=request, data=payload)
