from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from crmbridge.apps.api.response import error_response
from crmbridge.core.errors import (
    BridgeError,
    InstallExchangeError,
    InvalidStateError,
    ReconcileAttemptError,
    TokenUnavailableError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Domain errors that reach the HTTP layer map to a fixed status and code.
_BRIDGE_ERROR_MAP: dict[type[BridgeError], tuple[int, str]] = {
    TokenUnavailableError: (409, "TOKEN_UNAVAILABLE"),
    InstallExchangeError: (502, "TOKEN_EXCHANGE_FAILED"),
    InvalidStateError: (400, "INVALID_STATE"),
    ReconcileAttemptError: (503, "RECONCILE_RETRY"),
}


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail is either {"code", "message", ...extra} or a plain string.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def bridge_exception_handler(request: Request, exc: BridgeError) -> JSONResponse:
    status_code, code = 500, "INTERNAL_ERROR"
    for error_type, mapped in _BRIDGE_ERROR_MAP.items():
        if isinstance(exc, error_type):
            status_code, code = mapped
            break
    if status_code >= 500 and status_code != 503:
        logger.error("bridge_error path=%s error=%s", request.url.path, exc)
    details = None
    if isinstance(exc, TokenUnavailableError):
        details = {"sub_account_id": exc.sub_account_id}
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; the log keeps the detail.
    logger.exception("unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
