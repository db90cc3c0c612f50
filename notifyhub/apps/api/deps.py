from __future__ import annotations

from fastapi import HTTPException, Request

from notifyhub.services.delivery.runtime import DeliveryRuntime


def get_runtime(request: Request) -> DeliveryRuntime:
    # The runtime is built once per app in the lifespan hook.
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=503,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Delivery runtime not ready"},
        )
    return runtime
