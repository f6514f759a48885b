from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from botledger.apps.api.errors import (
    domain_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from botledger.apps.api.response import API_VERSION, REQUEST_ID_HEADER, ensure_request_id
from botledger.apps.api.routes.agent_webhooks import router as agent_webhooks_router
from botledger.apps.api.routes.bots import router as bots_router
from botledger.apps.api.routes.health import router as health_router
from botledger.apps.api.routes.usage import router as usage_router
from botledger.apps.api.routes.usage_admin import router as usage_admin_router
from botledger.apps.api.routes.webhooks_admin import router as webhooks_admin_router
from botledger.core.config import get_settings
from botledger.core.errors import BotLedgerError
from botledger.core.logging import configure_logging
from botledger.services.telemetry import record_request


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = ensure_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(BotLedgerError)
    async def _domain_exception_handler(request: Request, exc: BotLedgerError):
        return await domain_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(bots_router, prefix=f"/{API_VERSION}")
    # Inbound status changes from the recording agent.
    app.include_router(agent_webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_router, prefix=f"/{API_VERSION}")
    # Operator endpoints for the delivery queue and usage repair.
    app.include_router(webhooks_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(usage_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")

    # Unversioned health for load balancers.
    app.include_router(health_router, include_in_schema=False)
    return app


app = create_app()
