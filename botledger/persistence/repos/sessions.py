from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.domain.models import BotUsageRecord, MeetingSession, UTCDateTime


async def get_session(session: AsyncSession, session_id: str) -> MeetingSession | None:
    result = await session.execute(select(MeetingSession).where(MeetingSession.id == session_id))
    return result.scalar_one_or_none()


async def get_session_by_bot(session: AsyncSession, bot_id: str) -> MeetingSession | None:
    result = await session.execute(select(MeetingSession).where(MeetingSession.bot_id == bot_id))
    return result.scalars().first()


async def create_session(
    session: AsyncSession,
    *,
    user_id: str,
    organization_id: str | None = None,
    meeting_url: str | None = None,
    meeting_platform: str | None = None,
    session_id: str | None = None,
) -> MeetingSession:
    row = MeetingSession(
        user_id=user_id,
        organization_id=organization_id,
        meeting_url=meeting_url,
        meeting_platform=meeting_platform,
    )
    if session_id is not None:
        row.id = session_id
    session.add(row)
    await session.flush()
    return row


async def clear_bot(session: AsyncSession, *, session_id: str, bot_id: str) -> bool:
    # Conditional on the old id so a concurrent attach of a newer generation is never undone.
    result = await session.execute(
        update(MeetingSession)
        .where(MeetingSession.id == session_id, MeetingSession.bot_id == bot_id)
        .values(bot_id=None, bot_status=None)
    )
    return result.rowcount == 1


async def attach_bot(
    session: AsyncSession,
    *,
    session_id: str,
    bot_id: str,
    bot_status: str | None,
    meeting_url: str,
    meeting_platform: str | None,
    started_at: datetime,
) -> bool:
    # Only a bot-less session accepts a new agent; losing the race returns False.
    result = await session.execute(
        update(MeetingSession)
        .where(MeetingSession.id == session_id, MeetingSession.bot_id.is_(None))
        .values(
            bot_id=bot_id,
            bot_status=bot_status,
            meeting_url=meeting_url,
            meeting_platform=meeting_platform,
            recording_started_at=func.coalesce(
                MeetingSession.recording_started_at, literal(started_at, type_=UTCDateTime())
            ),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def set_bot_status(session: AsyncSession, *, bot_id: str, bot_status: str) -> None:
    await session.execute(
        update(MeetingSession)
        .where(MeetingSession.bot_id == bot_id)
        .values(bot_status=bot_status)
        .execution_options(synchronize_session=False)
    )


async def sum_billable_minutes(session: AsyncSession, session_id: str) -> tuple[int, int]:
    # Session totals span every agent generation that recorded for it.
    result = await session.execute(
        select(
            func.coalesce(func.sum(BotUsageRecord.billable_minutes), 0),
            func.coalesce(func.sum(BotUsageRecord.total_recording_seconds), 0),
        ).where(BotUsageRecord.session_id == session_id)
    )
    minutes, seconds = result.one()
    return int(minutes), int(seconds)
