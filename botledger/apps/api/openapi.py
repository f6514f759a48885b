from __future__ import annotations

from typing import Any

from botledger.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
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
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _error_response("Invalid signature", code="INVALID_SIGNATURE", message="webhook signature mismatch"),
    402: _error_response(
        "Quota exceeded",
        code="QUOTA_EXCEEDED",
        message="monthly recording quota exhausted (600/600 minutes)",
        details={"allowed": False, "minutes_used": 600, "minutes_limit": 600, "minutes_remaining": 0},
    ),
    404: _error_response("Not found", code="NOT_FOUND", message="session not found"),
    422: _error_response("Validation error", code="VALIDATION_ERROR", message="meeting_url is required"),
    500: _error_response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _error_response(
        "Deployment failed",
        code="DEPLOYMENT_FAILED",
        message="bot deployment failed after 3 attempt(s)",
    ),
}
