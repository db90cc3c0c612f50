from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from notifyhub.apps.api.deps import get_runtime
from notifyhub.apps.api.response import SuccessEnvelope, success_response
from notifyhub.domain.delivery import Channel, Priority, queue_name_for
from notifyhub.services.delivery.runtime import DeliveryRuntime
from notifyhub.services.telemetry import counters_snapshot, transport_latency_by_channel


router = APIRouter(prefix="/ops", tags=["ops"])


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    transport_latency_ms: dict[str, dict[str, float | None]]
    queue_depths: dict[str, int | None]
    window_s: int


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def metrics(
    request: Request,
    window_s: int = Query(default=300, ge=1, le=86400),
    runtime: DeliveryRuntime = Depends(get_runtime),
) -> dict:
    # Counters and latency come from this process; queue depth comes from the queue backend.
    prefix = runtime.settings.queue_prefix
    depths: dict[str, Any] = {}
    for channel in Channel:
        for priority in Priority:
            name = queue_name_for(prefix, channel, priority)
            depths[name] = await runtime.queue.depth(name)
    payload = MetricsResponse(
        counters=counters_snapshot(),
        transport_latency_ms=transport_latency_by_channel(window_s),
        queue_depths=depths,
        window_s=window_s,
    )
    return success_response(request=request, data=payload)
