from __future__ import annotations

from typing import Any, Generic, Literal, TypeVar, get_args
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")

ErrorCode = Literal[
    "BAD_REQUEST",
    "INVALID_SIGNATURE",
    "QUOTA_EXCEEDED",
    "NOT_FOUND",
    "CONFLICT",
    "VALIDATION_ERROR",
    "INTERNAL_ERROR",
    "DEPLOYMENT_FAILED",
    "AGENT_UNAVAILABLE",
    "SERVICE_UNAVAILABLE",
    "UNKNOWN_ERROR",
]

# Every code the API can emit and the HTTP status it travels with.
# When several codes share a status, the first one listed is the fallback for it.
ERROR_STATUS: dict[str, int] = {
    "BAD_REQUEST": 400,
    "INVALID_SIGNATURE": 401,
    "QUOTA_EXCEEDED": 402,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "VALIDATION_ERROR": 422,
    "INTERNAL_ERROR": 500,
    "DEPLOYMENT_FAILED": 502,
    "AGENT_UNAVAILABLE": 502,
    "SERVICE_UNAVAILABLE": 503,
    "UNKNOWN_ERROR": 500,
}

_ERROR_CODES = frozenset(get_args(ErrorCode))


def error_code_for_status(status_code: int) -> ErrorCode:
    for code, code_status in ERROR_STATUS.items():
        if code_status == status_code:
            return code  # type: ignore[return-value]
    return "UNKNOWN_ERROR"


def coerce_error_code(candidate: Any, *, status_code: int) -> ErrorCode:
    # Route-raised HTTPExceptions may carry a code; anything outside the table falls back by status.
    if isinstance(candidate, str) and candidate in _ERROR_CODES:
        return candidate  # type: ignore[return-value]
    return error_code_for_status(status_code)


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: ErrorCode
    message: str
    # Quota denials put the decision here; validation failures put field errors.
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def ensure_request_id(request: Request) -> str:
    """Return the request id, adopting the caller's header or minting one once."""
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}/")


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=ensure_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    # Load balancers hit the unversioned routes and expect the bare payload.
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: ErrorCode,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
