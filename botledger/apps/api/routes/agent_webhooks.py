from __future__ import annotations

import json
from typing import Any

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.apps.api.deps import get_db
from botledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botledger.apps.api.response import SuccessEnvelope, success_response
from botledger.core.config import get_settings
from botledger.core.errors import ValidationError
from botledger.services.usage.ingest import ingest_agent_event, verify_agent_signature

router = APIRouter(prefix="/agent-webhooks", tags=["agent-webhooks"], responses=DEFAULT_ERROR_RESPONSES)


@router.post("", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def receive_agent_webhook(
    request: Request,
    x_agent_signature: str | None = Header(default=None),
    x_agent_timestamp: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Signature covers the raw bytes, so read them before any JSON parsing.
    body = await request.body()
    verify_agent_signature(
        secret=get_settings().agent_webhook_secret,
        signature=x_agent_signature,
        timestamp=x_agent_timestamp,
        body=body,
    )
    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise ValidationError("webhook body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("webhook body must be a JSON object")

    result = await ingest_agent_event(db, payload=payload)
    await db.commit()
    data: dict[str, Any] = {"outcome": result.outcome, "bot_id": result.bot_id, "code": result.code}
    if result.record is not None:
        data["usage"] = {
            "status": result.record.status,
            "total_recording_seconds": result.record.total_recording_seconds,
            "billable_minutes": result.record.billable_minutes,
        }
    return success_response(request=request, data=data)
