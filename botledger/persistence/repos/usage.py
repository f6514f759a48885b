from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import delete, literal, select
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.domain.models import BotStatusEventRow, BotUsageRecord, UsageLedgerEntry, UTCDateTime
from botledger.persistence.dialects import upsert_insert


async def get_usage_record(session: AsyncSession, bot_id: str) -> BotUsageRecord | None:
    result = await session.execute(select(BotUsageRecord).where(BotUsageRecord.bot_id == bot_id))
    return result.scalar_one_or_none()


async def upsert_usage_record(session: AsyncSession, values: dict[str, Any]) -> BotUsageRecord:
    # Keyed on bot_id so recomputing a bot overwrites its single aggregate row.
    stmt = upsert_insert(session, BotUsageRecord).values(**values)
    updatable: dict[str, Any] = {
        key: stmt.excluded[key] for key in values if key not in {"id", "bot_id", "created_at"}
    }
    # ON CONFLICT updates skip column onupdate hooks.
    updatable["updated_at"] = literal(datetime.now(timezone.utc), type_=UTCDateTime())
    stmt = stmt.on_conflict_do_update(index_elements=[BotUsageRecord.bot_id], set_=updatable)
    await session.execute(stmt)
    result = await session.execute(
        select(BotUsageRecord)
        .where(BotUsageRecord.bot_id == values["bot_id"])
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def upsert_ledger_entries(session: AsyncSession, rows: Iterable[dict[str, Any]]) -> int:
    # Upsert on (session_id, minute_timestamp) so repeated runs never double-bill.
    count = 0
    for row in rows:
        stmt = upsert_insert(session, UsageLedgerEntry).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=[UsageLedgerEntry.session_id, UsageLedgerEntry.minute_timestamp],
            set_={
                UsageLedgerEntry.__table__.c.seconds_recorded: stmt.excluded.seconds_recorded,
                UsageLedgerEntry.__table__.c.bot_id: stmt.excluded.bot_id,
                UsageLedgerEntry.__table__.c["metadata"]: stmt.excluded["metadata"],
            },
        )
        await session.execute(stmt)
        count += 1
    return count


async def prune_ledger_entries(session: AsyncSession, *, bot_id: str, keep: list[datetime]) -> int:
    # Drops minutes a previous, longer computation emitted for this bot.
    stmt = delete(UsageLedgerEntry).where(UsageLedgerEntry.bot_id == bot_id)
    if keep:
        stmt = stmt.where(UsageLedgerEntry.minute_timestamp.notin_(keep))
    result = await session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount or 0


async def list_ledger_entries(session: AsyncSession, session_id: str) -> list[UsageLedgerEntry]:
    result = await session.execute(
        select(UsageLedgerEntry)
        .where(UsageLedgerEntry.session_id == session_id)
        .order_by(UsageLedgerEntry.minute_timestamp)
    )
    return list(result.scalars().all())


async def mirror_status_event(
    session: AsyncSession,
    *,
    bot_id: str,
    session_id: str | None,
    status_code: str,
    sub_code: str | None,
    created_at: datetime,
) -> bool:
    # Returns False when the same (bot, code, timestamp) was already mirrored.
    stmt = (
        upsert_insert(session, BotStatusEventRow)
        .values(
            bot_id=bot_id,
            session_id=session_id,
            status_code=status_code,
            sub_code=sub_code,
            created_at=created_at,
        )
        .on_conflict_do_nothing(
            index_elements=[
                BotStatusEventRow.bot_id,
                BotStatusEventRow.status_code,
                BotStatusEventRow.created_at,
            ]
        )
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def list_status_events(session: AsyncSession, bot_id: str) -> list[BotStatusEventRow]:
    result = await session.execute(
        select(BotStatusEventRow)
        .where(BotStatusEventRow.bot_id == bot_id)
        .order_by(BotStatusEventRow.created_at, BotStatusEventRow.id)
    )
    return list(result.scalars().all())
