from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.apps.api.deps import get_db
from botledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botledger.apps.api.response import SuccessEnvelope, success_response
from botledger.domain.models import DeadLetterEntry, WebhookJob
from botledger.services.webhooks import (
    list_dead_letters,
    list_webhook_jobs,
    process_pending_webhooks,
    replay_dead_letter,
)

router = APIRouter(prefix="/admin/webhooks", tags=["webhooks"], responses=DEFAULT_ERROR_RESPONSES)


class ReplayRequest(BaseModel):
    max_retries: int | None = Field(default=None, ge=1, le=20)


class ProcessRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=500)


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _job_payload(row: WebhookJob) -> dict[str, Any]:
    return {
        "id": row.id,
        "webhook_type": row.webhook_type,
        "event_type": row.event_type,
        "url": row.url,
        "status": row.status,
        "retry_count": row.retry_count,
        "max_retries": row.max_retries,
        "next_retry_at": _iso(row.next_retry_at),
        "claimed_at": _iso(row.claimed_at),
        "last_error": row.last_error,
        "errors": list(row.errors_json or []),
        "replayed_from_dead_letter_id": row.replayed_from_dead_letter_id,
        "completed_at": _iso(row.completed_at),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _dead_letter_payload(row: DeadLetterEntry) -> dict[str, Any]:
    return {
        "id": row.id,
        "original_job_id": row.original_job_id,
        "webhook_type": row.webhook_type,
        "event_type": row.event_type,
        "url": row.url,
        "payload": row.payload,
        "retry_count": row.retry_count,
        "errors": list(row.errors_json or []),
        "replay_count": row.replay_count,
        "last_replayed_at": _iso(row.last_replayed_at),
        "created_at": _iso(row.created_at),
    }


@router.get("/jobs", response_model=SuccessEnvelope[list[dict[str, Any]]] | list[dict[str, Any]])
async def get_webhook_jobs(
    request: Request,
    status_filter: Literal["pending", "processing", "completed", "failed"] | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    rows = await list_webhook_jobs(db, status=status_filter, limit=limit)
    return success_response(request=request, data=[_job_payload(row) for row in rows])


@router.get("/dead-letters", response_model=SuccessEnvelope[list[dict[str, Any]]] | list[dict[str, Any]])
async def get_dead_letters(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[dict[str, Any]]:
    rows = await list_dead_letters(db, limit=limit)
    return success_response(request=request, data=[_dead_letter_payload(row) for row in rows])


@router.post(
    "/dead-letters/{dead_letter_id}/replay",
    response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any],
)
async def post_replay_dead_letter(
    dead_letter_id: str,
    request: Request,
    payload: ReplayRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # The entry is kept; replay only adds a fresh pending job.
    job = await replay_dead_letter(
        db,
        dead_letter_id=dead_letter_id,
        max_retries=payload.max_retries if payload else None,
    )
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Dead letter not found"},
        )
    await db.commit()
    return success_response(request=request, data=_job_payload(job))


@router.post("/process", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def post_process_webhooks(
    request: Request,
    payload: ProcessRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Manual sweep for operators; the worker runs the same call on an interval.
    result = await process_pending_webhooks(db, limit=payload.limit if payload else None)
    return success_response(request=request, data=result.as_dict())
