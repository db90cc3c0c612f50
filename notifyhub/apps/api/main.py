from __future__ import annotations

from contextlib import asynccontextmanager
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifyhub.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from notifyhub.apps.api.response import API_VERSION
from notifyhub.apps.api.routes.events import router as events_router
from notifyhub.apps.api.routes.health import router as health_router
from notifyhub.apps.api.routes.ops import router as ops_router
from notifyhub.apps.api.routes.tasks import router as tasks_router
from notifyhub.core.config import get_settings
from notifyhub.core.errors import NotifyHubError
from notifyhub.core.logging import configure_logging
from notifyhub.services.delivery.runtime import DeliveryRuntime, build_runtime
from notifyhub.services.telemetry import increment_counter


def create_app(runtime: DeliveryRuntime | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Injected runtimes belong to the caller; only close what we built here.
        owned = runtime is None
        app.state.runtime = runtime if runtime is not None else await build_runtime(get_settings())
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.close()
            app.state.runtime = None

    app = FastAPI(title="NotifyHub API", lifespan=lifespan)
    # Set eagerly so test clients that skip lifespan still see the injected runtime.
    app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_requests_{response.status_code // 100}xx")
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers.setdefault("X-Response-Time-Ms", f"{latency_ms:.1f}")
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(NotifyHubError)
    async def _domain_exception_handler(request: Request, exc: NotifyHubError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}", include_in_schema=False)
    app.include_router(events_router, prefix=f"/{API_VERSION}")
    app.include_router(tasks_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
