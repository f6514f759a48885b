from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.apps.api.deps import get_agent, get_db, get_quota
from botledger.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from botledger.apps.api.response import SuccessEnvelope, success_response
from botledger.providers.agent.base import RecordingAgentClient
from botledger.services.bots.orchestrator import deploy_bot, stop_bot
from botledger.services.quota import QuotaService

router = APIRouter(prefix="/sessions", tags=["bots"], responses=DEFAULT_ERROR_RESPONSES)


class DeployBotRequest(BaseModel):
    # Falls back to the URL stored on the session.
    meeting_url: str | None = Field(default=None, max_length=2048)
    max_attempts: int | None = Field(default=None, ge=1, le=10)


@router.post("/{session_id}/deploy-bot", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def deploy_session_bot(
    session_id: str,
    request: Request,
    payload: DeployBotRequest | None = None,
    db: AsyncSession = Depends(get_db),
    agent: RecordingAgentClient = Depends(get_agent),
    quota: QuotaService = Depends(get_quota),
) -> dict[str, Any]:
    body = payload or DeployBotRequest()
    deployed = await deploy_bot(
        db,
        session_id=session_id,
        meeting_url=body.meeting_url,
        max_attempts=body.max_attempts,
        agent=agent,
        quota=quota,
    )
    data = {
        "session_id": deployed.session_id,
        "bot_id": deployed.bot_id,
        "bot_status": deployed.bot_status,
        "meeting_platform": deployed.meeting_platform,
        "replaced_bot_id": deployed.replaced_bot_id,
    }
    return success_response(request=request, data=data)


@router.post("/{session_id}/stop-bot", response_model=SuccessEnvelope[dict[str, Any]] | dict[str, Any])
async def stop_session_bot(
    session_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    agent: RecordingAgentClient = Depends(get_agent),
) -> dict[str, Any]:
    stopped = await stop_bot(db, session_id=session_id, agent=agent)
    data = {
        "session_id": stopped.session_id,
        "bot_id": stopped.bot_id,
        "stop_requested": stopped.stop_requested,
    }
    return success_response(request=request, data=data)
