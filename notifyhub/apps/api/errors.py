from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from notifyhub.apps.api.response import error_response
from notifyhub.core.errors import (
    InvalidTaskStateError,
    NotifyHubError,
    PolicyError,
    ScheduleError,
    StoreUnavailable,
    TaskNotFoundError,
    TemplateError,
    UnsupportedEventError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors that reach the API surface, mapped to (status, code).
_DOMAIN_ERRORS: tuple[tuple[type[NotifyHubError], int, str], ...] = (
    (TaskNotFoundError, 404, "TASK_NOT_FOUND"),
    (InvalidTaskStateError, 409, "INVALID_TASK_STATE"),
    (PolicyError, 422, "POLICY_INVALID"),
    (UnsupportedEventError, 422, "EVENT_UNSUPPORTED"),
    (ScheduleError, 422, "SCHEDULE_INVALID"),
    (TemplateError, 422, "TEMPLATE_INVALID"),
    (StoreUnavailable, 503, "STORE_UNAVAILABLE"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException details may be a plain message or a {code, message, ...} mapping.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException | StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: NotifyHubError) -> JSONResponse:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            payload = error_response(request=request, code=code, message=str(exc))
            return JSONResponse(content=payload, status_code=status_code)
    return await unhandled_exception_handler(request, exc)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; log them and return a stable envelope.
    logger.error("unhandled_api_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
