from __future__ import annotations

from typing import Any

from crmbridge.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _error_response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error_response("Bad request", code="INVALID_JSON", message="Request body is not valid JSON"),
    422: _error_response(
        "Validation error",
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": []},
    ),
    500: _error_response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}

OAUTH_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error_response("Invalid OAuth state", code="INVALID_STATE", message="OAuth state does not match"),
    502: _error_response(
        "Authorization code exchange failed",
        code="TOKEN_EXCHANGE_FAILED",
        message="Token exchange failed",
    ),
}

TASK_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _error_response(
        "Missing identifiers",
        code="MISSING_IDENTIFIERS",
        message="subAccountId and groupKey are required",
    ),
    401: _error_response(
        "Missing or wrong shared secret",
        code="RECONCILE_UNAUTHORIZED",
        message="Invalid reconcile token",
    ),
    409: _error_response(
        "No usable platform token",
        code="TOKEN_UNAVAILABLE",
        message="No usable token for sub-account loc_1",
        details={"sub_account_id": "loc_1"},
    ),
    503: _error_response(
        "Attempt could not establish ground truth; the queue should retry",
        code="RECONCILE_RETRY",
        message="Lookup failed; retry later",
    ),
}
