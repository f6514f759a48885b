from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from botledger.apps.api.response import (
    ERROR_STATUS,
    ErrorCode,
    coerce_error_code,
    error_response,
    is_versioned_request,
)
from botledger.core.errors import (
    AgentError,
    BotLedgerError,
    DeploymentFailedError,
    InvalidSignatureError,
    ProviderConfigError,
    QuotaExceededError,
    SessionNotFoundError,
    ValidationError,
)


# Ordered most-specific first; the first matching class wins.
_DOMAIN_ERRORS: tuple[tuple[type[BotLedgerError], ErrorCode], ...] = (
    (ValidationError, "VALIDATION_ERROR"),
    (SessionNotFoundError, "NOT_FOUND"),
    (QuotaExceededError, "QUOTA_EXCEEDED"),
    (DeploymentFailedError, "DEPLOYMENT_FAILED"),
    (InvalidSignatureError, "INVALID_SIGNATURE"),
    (AgentError, "AGENT_UNAVAILABLE"),
    (ProviderConfigError, "SERVICE_UNAVAILABLE"),
)


def _split_detail(detail: Any, status_code: int) -> tuple[ErrorCode, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = coerce_error_code(detail.get("code"), status_code=status_code)
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    code = coerce_error_code(None, status_code=status_code)
    if isinstance(detail, str):
        return code, detail, None
    return code, "Request failed", None


def domain_error_status(exc: BotLedgerError) -> tuple[int, ErrorCode]:
    for error_type, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            return ERROR_STATUS[code], code
    return ERROR_STATUS["INTERNAL_ERROR"], "INTERNAL_ERROR"


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Covers route-raised FastAPI HTTPExceptions as well as unknown routes and methods.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def domain_exception_handler(request: Request, exc: BotLedgerError) -> JSONResponse:
    # Service-layer errors carry no HTTP knowledge; translate them here.
    status_code, code = domain_error_status(exc)
    details: dict[str, Any] | None = None
    if isinstance(exc, QuotaExceededError):
        details = exc.decision.as_dict()
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": {"code": code, "message": str(exc)}}, status_code=status_code)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Surface validation errors with structured details for operator tooling.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
