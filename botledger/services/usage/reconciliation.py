from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botledger.core.config import Settings, get_settings
from botledger.core.errors import AgentError, BotLedgerError, ReconciliationSkipped
from botledger.domain.models import BotUsageRecord, MeetingSession
from botledger.persistence.repos.sessions import get_session, get_session_by_bot, sum_billable_minutes
from botledger.persistence.repos.usage import (
    get_usage_record,
    prune_ledger_entries,
    upsert_ledger_entries,
    upsert_usage_record,
)
from botledger.providers.agent.base import RecordingAgentClient
from botledger.providers.agent.factory import get_agent_client
from botledger.services.telemetry import increment_counter
from botledger.services.usage.event_log import BotStatusEvent, normalize_status_changes


logger = logging.getLogger(__name__)

LEDGER_SOURCE = "recording_agent"

STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class StatusCodes:
    # Marker sets come from settings so new agent codes are a config change.
    start: frozenset[str]
    end: frozenset[str]
    terminal: frozenset[str]
    failure: frozenset[str]

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "StatusCodes":
        settings = settings or get_settings()
        return cls(
            start=frozenset(settings.recording_start_codes),
            end=frozenset(settings.recording_end_codes),
            terminal=frozenset(settings.agent_terminal_codes),
            failure=frozenset(settings.agent_failure_codes),
        )

    @property
    def markers(self) -> frozenset[str]:
        return self.start | self.end | self.terminal


@dataclass(frozen=True)
class UsageComputation:
    started_at: datetime | None
    ended_at: datetime | None
    duration_seconds: int
    billable_minutes: int
    status: str
    latest_code: str | None


@dataclass
class ReconcileBatchResult:
    scanned: int = 0
    reconciled: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "reconciled": self.reconciled,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def billable_minutes_for(duration_seconds: int) -> int:
    # Partial minutes bill as a full minute.
    return math.ceil(max(0, duration_seconds) / 60)


def compute_usage(events: Iterable[BotStatusEvent], codes: StatusCodes) -> UsageComputation:
    """Derive the recording interval of one bot from its status history.

    The interval runs from the first start marker to the first end marker at
    or after it. Events are evaluated in timestamp order regardless of the
    order they arrived in, so the result depends only on the event set.
    """
    # Same-instant ties order terminal codes last so the latest code is stable.
    ordered = sorted(events, key=lambda event: (event.created_at, event.code in codes.terminal, event.code))
    latest_code = ordered[-1].code if ordered else None

    start = next((event for event in ordered if event.code in codes.start), None)
    end = None
    if start is not None:
        end = next(
            (
                event
                for event in ordered
                if event.code in codes.end and event is not start and event.created_at >= start.created_at
            ),
            None,
        )

    if start is not None and end is not None:
        duration = max(0, math.floor((end.created_at - start.created_at).total_seconds()))
        return UsageComputation(
            started_at=start.created_at,
            ended_at=end.created_at,
            duration_seconds=duration,
            billable_minutes=billable_minutes_for(duration),
            status=STATUS_COMPLETED,
            latest_code=latest_code,
        )

    if latest_code in codes.failure:
        status = STATUS_FAILED
    elif latest_code is None or latest_code not in codes.terminal:
        status = STATUS_ACTIVE
    else:
        status = STATUS_COMPLETED
    return UsageComputation(
        started_at=start.created_at if start is not None else None,
        ended_at=None,
        duration_seconds=0,
        billable_minutes=0,
        status=status,
        latest_code=latest_code,
    )


def build_ledger_entries(
    computation: UsageComputation,
    *,
    session_id: str,
    user_id: str,
    organization_id: str | None,
    bot_id: str,
) -> list[dict[str, Any]]:
    # One row per billed minute; the final row carries the remainder seconds.
    if computation.started_at is None or computation.billable_minutes <= 0:
        return []
    entries: list[dict[str, Any]] = []
    for index in range(computation.billable_minutes):
        entries.append(
            {
                "user_id": user_id,
                "organization_id": organization_id,
                "session_id": session_id,
                "bot_id": bot_id,
                "minute_timestamp": computation.started_at + timedelta(minutes=index),
                "seconds_recorded": min(60, computation.duration_seconds - 60 * index),
                "source": LEDGER_SOURCE,
                "metadata_json": {
                    "bot_id": bot_id,
                    "minute_index": index,
                    "total_minutes": computation.billable_minutes,
                },
            }
        )
    return entries


async def _load_agent_history(agent: RecordingAgentClient, bot_id: str) -> tuple[list[BotStatusEvent], dict[str, Any]]:
    try:
        status = await agent.get_status(bot_id)
    except AgentError as exc:
        raise ReconciliationSkipped(f"agent history unavailable for {bot_id}: {exc}") from exc
    return normalize_status_changes(status.status_changes), status.metadata


async def _resolve_session(
    session: AsyncSession,
    *,
    bot_id: str,
    session_id: str | None,
    agent_metadata: dict[str, Any],
) -> MeetingSession | None:
    record = await get_usage_record(session, bot_id)
    if record is not None:
        return await get_session(session, record.session_id)
    if session_id:
        return await get_session(session, session_id)
    meeting = await get_session_by_bot(session, bot_id)
    if meeting is not None:
        return meeting
    metadata_session_id = agent_metadata.get("session_id")
    if metadata_session_id:
        return await get_session(session, str(metadata_session_id))
    return None


async def _refresh_session_totals(
    session: AsyncSession,
    *,
    meeting: MeetingSession,
    bot_id: str,
    computation: UsageComputation,
) -> None:
    settings = get_settings()
    minutes, seconds = await sum_billable_minutes(session, meeting.id)
    meeting.billable_minutes = minutes
    meeting.recording_duration_seconds = seconds
    meeting.billable_amount = round(minutes * settings.cost_per_minute, 2)
    if computation.started_at is not None and (
        meeting.recording_started_at is None or computation.started_at < meeting.recording_started_at
    ):
        meeting.recording_started_at = computation.started_at
    if meeting.bot_id == bot_id:
        if computation.latest_code:
            meeting.bot_status = computation.latest_code
        if computation.ended_at is not None:
            meeting.recording_ended_at = computation.ended_at


async def reconcile_bot(
    session: AsyncSession,
    *,
    bot_id: str,
    events: Iterable[BotStatusEvent] | None = None,
    session_id: str | None = None,
    agent: RecordingAgentClient | None = None,
    codes: StatusCodes | None = None,
) -> BotUsageRecord | None:
    """Recompute one bot's usage record and ledger minutes.

    ``events`` is the already-fetched history (live path, backfill); when
    omitted the history is read from the agent. Returns None when the bot
    cannot be reconciled yet (agent unreachable, no owning session); those
    cases are logged and left for the next pass. Database errors propagate
    so the caller's transaction boundary decides whether to retry.
    """
    codes = codes or StatusCodes.from_settings()
    agent_metadata: dict[str, Any] = {}
    try:
        if events is None:
            events, agent_metadata = await _load_agent_history(agent or get_agent_client(), bot_id)
        meeting = await _resolve_session(
            session,
            bot_id=bot_id,
            session_id=session_id,
            agent_metadata=agent_metadata,
        )
        if meeting is None:
            raise ReconciliationSkipped(f"no session owns bot {bot_id}")
    except ReconciliationSkipped as exc:
        increment_counter("usage_reconcile_skipped_total")
        logger.warning("usage_reconcile_skipped bot_id=%s reason=%s", bot_id, exc)
        return None

    computation = compute_usage(events, codes)
    record = await upsert_usage_record(
        session,
        {
            "bot_id": bot_id,
            "session_id": meeting.id,
            "user_id": meeting.user_id,
            "organization_id": meeting.organization_id,
            "recording_started_at": computation.started_at,
            "recording_ended_at": computation.ended_at,
            "total_recording_seconds": computation.duration_seconds,
            "billable_minutes": computation.billable_minutes,
            "status": computation.status,
        },
    )
    entries = build_ledger_entries(
        computation,
        session_id=meeting.id,
        user_id=meeting.user_id,
        organization_id=meeting.organization_id,
        bot_id=bot_id,
    )
    await upsert_ledger_entries(session, entries)
    await prune_ledger_entries(session, bot_id=bot_id, keep=[entry["minute_timestamp"] for entry in entries])
    await _refresh_session_totals(session, meeting=meeting, bot_id=bot_id, computation=computation)
    await session.flush()

    increment_counter("usage_reconciled_total")
    logger.info(
        "usage_reconciled bot_id=%s session_id=%s status=%s duration_s=%s billable_minutes=%s",
        bot_id,
        meeting.id,
        computation.status,
        computation.duration_seconds,
        computation.billable_minutes,
    )
    return record


async def _reconcile_many(
    session_factory: async_sessionmaker[AsyncSession],
    bot_ids: list[str],
    *,
    delay_s: float,
    agent: RecordingAgentClient | None,
    sleep: Callable[[float], Awaitable[Any]],
) -> ReconcileBatchResult:
    result = ReconcileBatchResult(scanned=len(bot_ids))
    for index, bot_id in enumerate(bot_ids):
        if index and delay_s > 0:
            # Agent API politeness between items.
            await sleep(delay_s)
        async with session_factory() as session:
            try:
                record = await reconcile_bot(session, bot_id=bot_id, agent=agent)
                await session.commit()
            except (SQLAlchemyError, BotLedgerError):
                # One bad bot never stops the batch.
                await session.rollback()
                result.failed += 1
                increment_counter("usage_reconcile_failed_total")
                logger.exception("usage_reconcile_failed bot_id=%s", bot_id)
                continue
        if record is None:
            result.skipped += 1
        else:
            result.reconciled += 1
    return result


async def backfill_all(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    delay_s: float | None = None,
    limit: int | None = None,
    agent: RecordingAgentClient | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> ReconcileBatchResult:
    """Reconcile bots whose usage may have been missed by the live path.

    Candidates are sessions that reference a bot but have zero billable
    minutes, plus usage records still marked active.
    """
    settings = get_settings()
    delay_s = settings.backfill_delay_s if delay_s is None else delay_s
    limit = limit or settings.backfill_batch_size
    async with session_factory() as session:
        session_rows = await session.execute(
            select(MeetingSession.bot_id)
            .where(MeetingSession.bot_id.is_not(None), MeetingSession.billable_minutes == 0)
            .order_by(MeetingSession.created_at)
            .limit(limit)
        )
        active_rows = await session.execute(
            select(BotUsageRecord.bot_id)
            .where(BotUsageRecord.status == STATUS_ACTIVE)
            .order_by(BotUsageRecord.updated_at)
            .limit(limit)
        )
    bot_ids = list(dict.fromkeys([*session_rows.scalars().all(), *active_rows.scalars().all()]))[:limit]
    result = await _reconcile_many(session_factory, bot_ids, delay_s=delay_s, agent=agent, sleep=sleep)
    logger.info("usage_backfill_finished %s", " ".join(f"{k}={v}" for k, v in result.as_dict().items()))
    return result


async def monitor_active_bots(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    agent: RecordingAgentClient | None = None,
) -> ReconcileBatchResult:
    # Close out bots whose final webhook never arrived, between backfill passes.
    settings = get_settings()
    async with session_factory() as session:
        rows = await session.execute(
            select(BotUsageRecord.bot_id)
            .where(BotUsageRecord.status == STATUS_ACTIVE)
            .order_by(BotUsageRecord.updated_at)
            .limit(settings.backfill_batch_size)
        )
    bot_ids = list(rows.scalars().all())
    if not bot_ids:
        return ReconcileBatchResult()
    return await _reconcile_many(session_factory, bot_ids, delay_s=0, agent=agent, sleep=asyncio.sleep)
