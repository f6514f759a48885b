from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.apps.api.deps import get_agent, get_db
from botledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botledger.apps.api.response import SuccessEnvelope, success_response
from botledger.domain.models import BotUsageRecord
from botledger.persistence.db import SessionLocal
from botledger.providers.agent.base import RecordingAgentClient
from botledger.services.telemetry import (
    availability,
    counters_snapshot,
    external_latency_by_integration,
    gauges_snapshot,
)
from botledger.services.usage.reconciliation import backfill_all, reconcile_bot

router = APIRouter(prefix="/admin", tags=["usage-admin"], responses=DEFAULT_ERROR_RESPONSES)


class BackfillRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=5000)
    delay_s: float | None = Field(default=None, ge=0, le=60)


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _usage_record_payload(row: BotUsageRecord) -> dict[str, Any]:
    return {
        "bot_id": row.bot_id,
        "session_id": row.session_id,
        "user_id": row.user_id,
        "organization_id": row.organization_id,
        "recording_started_at": _iso(row.recording_started_at),
        "recording_ended_at": _iso(row.recording_ended_at),
        "total_recording_seconds": row.total_recording_seconds,
        "billable_minutes": row.billable_minutes,
        "status": row.status,
        "updated_at": _iso(row.updated_at),
    }


@router.post(
    "/usage/bots/{bot_id}/reconcile",
    response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any],
)
async def post_reconcile_bot(
    bot_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    agent: RecordingAgentClient = Depends(get_agent),
) -> dict[str, Any]:
    # Reads the agent's authoritative history, same as the backfill.
    record = await reconcile_bot(db, bot_id=bot_id, agent=agent)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": f"Bot {bot_id} could not be reconciled"},
        )
    await db.commit()
    return success_response(request=request, data=_usage_record_payload(record))


@router.post("/usage/backfill", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def post_backfill(
    request: Request,
    payload: BackfillRequest | None = None,
    agent: RecordingAgentClient = Depends(get_agent),
) -> dict[str, Any]:
    # Each bot commits in its own session, so the request session is not used.
    body = payload or BackfillRequest()
    result = await backfill_all(SessionLocal, delay_s=body.delay_s, limit=body.limit, agent=agent)
    return success_response(request=request, data=result.as_dict())


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def get_metrics(request: Request) -> dict[str, Any]:
    data = {
        "availability_5m": availability(300),
        "external_calls_5m": external_latency_by_integration(300),
        "counters": counters_snapshot(),
        "gauges": gauges_snapshot(),
    }
    return success_response(request=request, data=data)
