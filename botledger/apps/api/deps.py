from __future__ import annotations

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from botledger.persistence.db import get_session
from botledger.providers.agent.base import RecordingAgentClient
from botledger.providers.agent.factory import get_agent_client
from botledger.services.quota import QuotaService, get_quota_service


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_agent() -> RecordingAgentClient:
    # Overridable in tests through app.dependency_overrides.
    return get_agent_client()


def get_quota() -> QuotaService:
    return get_quota_service()
