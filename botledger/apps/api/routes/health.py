from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.apps.api.deps import get_db
from botledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botledger.apps.api.response import SuccessEnvelope, success_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Report degraded instead of failing so load balancers can still read the body.
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        database = "unavailable"
        logger.warning("health_database_unavailable", exc_info=exc)
    payload = HealthResponse(status="ok" if database == "ok" else "degraded", database=database)
    return success_response(request=request, data=payload.model_dump())
