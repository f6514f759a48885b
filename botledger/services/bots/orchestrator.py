from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Protocol
from urllib.parse import urlparse

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.core.config import get_settings
from botledger.core.errors import (
    AgentError,
    AgentNotFoundError,
    BotLedgerError,
    DeploymentFailedError,
    QuotaExceededError,
    SessionNotFoundError,
    TransientAgentError,
    ValidationError,
)
from botledger.domain.models import BotUsageRecord, MeetingSession
from botledger.persistence.repos.sessions import attach_bot, clear_bot, get_session
from botledger.providers.agent.base import AgentBot, RecordingAgentClient
from botledger.providers.agent.factory import get_agent_client
from botledger.services.quota import QuotaDecision, get_quota_service
from botledger.services.resilience import default_retry_policy, retry_async
from botledger.services.telemetry import increment_counter
from botledger.services.usage.event_log import normalize_status_changes
from botledger.services.usage.reconciliation import STATUS_ACTIVE, StatusCodes
from botledger.services.webhooks import enqueue_webhook


logger = logging.getLogger(__name__)

_PLATFORM_HOSTS = (
    ("zoom.us", "zoom"),
    ("meet.google.com", "google_meet"),
    ("teams.microsoft.com", "teams"),
    ("teams.live.com", "teams"),
)


class QuotaCollaborator(Protocol):
    async def can_record(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        organization_id: str | None,
    ) -> QuotaDecision:
        ...


@dataclass(frozen=True)
class DeployedBot:
    session_id: str
    bot_id: str
    bot_status: str | None
    meeting_platform: str
    replaced_bot_id: str | None = None


@dataclass(frozen=True)
class StoppedBot:
    session_id: str
    bot_id: str
    stop_requested: bool


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def detect_meeting_platform(meeting_url: str) -> str:
    host = (urlparse(meeting_url).hostname or "").lower()
    for suffix, platform in _PLATFORM_HOSTS:
        if host == suffix or host.endswith(f".{suffix}"):
            return platform
    return "unknown"


def validate_meeting_url(meeting_url: str | None) -> str:
    candidate = (meeting_url or "").strip()
    if not candidate:
        raise ValidationError("meeting_url is required")
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ValidationError("meeting_url must be an absolute http(s) URL")
    return candidate


async def _clear_stale_bot(
    session: AsyncSession,
    *,
    meeting: MeetingSession,
    agent: RecordingAgentClient,
    codes: StatusCodes,
) -> str | None:
    """Detach the previous agent generation before a new one is deployed.

    Stopping the old agent is best-effort: agent and local state may have
    drifted, so failures are logged and the local reference is cleared anyway.
    """
    stale_bot_id = meeting.bot_id
    if not stale_bot_id:
        return None
    try:
        status = await agent.get_status(stale_bot_id)
        events = normalize_status_changes(status.status_changes)
        latest = status.status or (events[-1].code if events else None)
        if latest not in codes.terminal:
            await agent.stop(stale_bot_id)
            logger.info("stale_bot_stopped session_id=%s bot_id=%s status=%s", meeting.id, stale_bot_id, latest)
    except AgentNotFoundError:
        logger.info("stale_bot_not_found session_id=%s bot_id=%s", meeting.id, stale_bot_id)
    except Exception as exc:  # noqa: BLE001 - stale cleanup never blocks a new deployment
        increment_counter("stale_bot_cleanup_errors_total")
        logger.warning("stale_bot_cleanup_failed session_id=%s bot_id=%s", meeting.id, stale_bot_id, exc_info=exc)

    await clear_bot(session, session_id=meeting.id, bot_id=stale_bot_id)
    await session.commit()
    return stale_bot_id


async def _deploy_with_retries(
    agent: RecordingAgentClient,
    *,
    meeting: MeetingSession,
    meeting_url: str,
    max_attempts: int,
) -> AgentBot:
    policy = default_retry_policy(max_attempts=max_attempts)
    metadata = {"session_id": meeting.id, "user_id": meeting.user_id}

    def _retryable(exc: Exception) -> bool:
        return isinstance(exc, (TransientAgentError, TimeoutError))

    try:
        return await retry_async(
            lambda: agent.deploy(meeting_url, metadata=metadata),
            policy=policy,
            retryable=_retryable,
        )
    except (AgentError, TimeoutError) as exc:
        increment_counter("bot_deploy_failed_total")
        logger.error(
            "bot_deploy_failed session_id=%s max_attempts=%s error=%s",
            meeting.id,
            max_attempts,
            exc,
        )
        raise DeploymentFailedError(f"bot deployment failed after {max_attempts} attempt(s): {exc}") from exc


async def _stop_quietly(agent: RecordingAgentClient, bot_id: str) -> None:
    try:
        await agent.stop(bot_id)
    except Exception as exc:  # noqa: BLE001 - orphan cleanup is best-effort
        logger.warning("orphan_bot_stop_failed bot_id=%s", bot_id, exc_info=exc)


async def _notify_bot_deployed(session: AsyncSession, deployed: DeployedBot, *, user_id: str) -> None:
    # Fire-and-forget: the sweep delivers later and a failed enqueue never fails the deploy.
    url = get_settings().lifecycle_webhook_url
    if not url:
        return
    try:
        await enqueue_webhook(
            session,
            url=url,
            payload={
                "event": "bot_deployed",
                "session_id": deployed.session_id,
                "bot_id": deployed.bot_id,
                "bot_status": deployed.bot_status,
                "meeting_platform": deployed.meeting_platform,
                "user_id": user_id,
                "deployed_at": _utc_now().isoformat(),
            },
            webhook_type="bot_lifecycle",
            event_type="bot_deployed",
        )
        await session.commit()
    except (SQLAlchemyError, BotLedgerError) as exc:
        await session.rollback()
        increment_counter("lifecycle_notification_enqueue_failed_total")
        logger.warning("bot_deployed_notification_failed bot_id=%s", deployed.bot_id, exc_info=exc)


async def deploy_bot(
    session: AsyncSession,
    *,
    session_id: str,
    meeting_url: str | None = None,
    max_attempts: int | None = None,
    agent: RecordingAgentClient | None = None,
    quota: QuotaCollaborator | None = None,
) -> DeployedBot:
    """Attach a fresh recording agent to a session.

    Order matters: validate, check quota (no agent calls when denied), clear
    the stale agent, deploy with retries, then attach only if the session is
    still bot-less. The session never references two agent generations and
    is never left half-attached.
    """
    settings = get_settings()
    codes = StatusCodes.from_settings(settings)
    attempts = settings.deploy_max_attempts if max_attempts is None else int(max_attempts)
    if attempts < 1:
        raise ValidationError("max_attempts must be at least 1")

    meeting = await get_session(session, session_id)
    if meeting is None:
        raise SessionNotFoundError(f"session {session_id} not found")
    url = validate_meeting_url(meeting_url or meeting.meeting_url)

    quota = quota or get_quota_service()
    decision = await quota.can_record(session, user_id=meeting.user_id, organization_id=meeting.organization_id)
    if not decision.allowed:
        increment_counter("bot_deploy_quota_denied_total")
        raise QuotaExceededError(decision)

    agent = agent or get_agent_client()
    replaced = await _clear_stale_bot(session, meeting=meeting, agent=agent, codes=codes)
    bot = await _deploy_with_retries(agent, meeting=meeting, meeting_url=url, max_attempts=attempts)

    platform = detect_meeting_platform(url)
    attached = await attach_bot(
        session,
        session_id=meeting.id,
        bot_id=bot.id,
        bot_status=bot.status,
        meeting_url=url,
        meeting_platform=platform,
        started_at=_utc_now(),
    )
    if not attached:
        # A concurrent deploy attached first; the agent we just created must not linger.
        await session.rollback()
        await _stop_quietly(agent, bot.id)
        increment_counter("bot_deploy_conflict_total")
        raise DeploymentFailedError(f"session {session_id} acquired another bot concurrently")
    session.add(
        BotUsageRecord(
            bot_id=bot.id,
            session_id=meeting.id,
            user_id=meeting.user_id,
            organization_id=meeting.organization_id,
            status=STATUS_ACTIVE,
        )
    )
    await session.commit()
    await session.refresh(meeting)

    increment_counter("bot_deployed_total")
    logger.info(
        "bot_deployed session_id=%s bot_id=%s platform=%s replaced_bot_id=%s",
        meeting.id,
        bot.id,
        platform,
        replaced,
    )
    deployed = DeployedBot(
        session_id=meeting.id,
        bot_id=bot.id,
        bot_status=bot.status,
        meeting_platform=platform,
        replaced_bot_id=replaced,
    )
    await _notify_bot_deployed(session, deployed, user_id=meeting.user_id)
    return deployed


async def stop_bot(
    session: AsyncSession,
    *,
    session_id: str,
    agent: RecordingAgentClient | None = None,
) -> StoppedBot:
    # The bot id stays attached so the final status webhook or backfill can bill the recording.
    meeting = await get_session(session, session_id)
    if meeting is None:
        raise SessionNotFoundError(f"session {session_id} not found")
    if not meeting.bot_id:
        raise ValidationError("session has no bot to stop")
    agent = agent or get_agent_client()
    stop_requested = True
    try:
        await agent.stop(meeting.bot_id)
    except AgentError as exc:
        stop_requested = False
        logger.warning("bot_stop_failed session_id=%s bot_id=%s", meeting.id, meeting.bot_id, exc_info=exc)
    if stop_requested:
        meeting.bot_status = "stopping"
        await session.commit()
    return StoppedBot(session_id=meeting.id, bot_id=meeting.bot_id, stop_requested=stop_requested)
