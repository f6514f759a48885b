from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.core.config import get_settings
from botledger.domain.models import PlanLimit, UsageLedgerEntry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QuotaDecision:
    # Minutes are ledger rows, so used/limit/remaining are whole billable minutes.
    allowed: bool
    minutes_used: int
    minutes_limit: int
    minutes_remaining: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "minutes_used": self.minutes_used,
            "minutes_limit": self.minutes_limit,
            "minutes_remaining": self.minutes_remaining,
        }


@dataclass(frozen=True)
class UsageSummary:
    decision: QuotaDecision
    month: str
    percentage_used: float
    days_remaining: int
    average_daily_usage: float
    projected_monthly_usage: int


class QuotaService:
    def __init__(self, *, time_provider: Callable[[], datetime] | None = None) -> None:
        # Allow time injection for deterministic month rollover tests.
        self._time_provider = time_provider or _utc_now

    async def can_record(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        organization_id: str | None,
    ) -> QuotaDecision:
        now = self._time_provider()
        limit = await _monthly_limit(session, user_id=user_id, organization_id=organization_id)
        used = await _minutes_used(
            session,
            user_id=user_id,
            organization_id=organization_id,
            since=_month_start(now),
        )
        remaining = max(limit - used, 0)
        decision = QuotaDecision(
            allowed=remaining > 0,
            minutes_used=used,
            minutes_limit=limit,
            minutes_remaining=remaining,
        )
        if not decision.allowed:
            logger.info(
                "recording_quota_exhausted user_id=%s organization_id=%s used=%s limit=%s",
                user_id,
                organization_id,
                used,
                limit,
            )
        return decision

    async def usage_summary(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        organization_id: str | None,
    ) -> UsageSummary:
        # Month-to-date view with a straight-line projection to month end.
        now = self._time_provider()
        decision = await self.can_record(session, user_id=user_id, organization_id=organization_id)
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        days_elapsed = now.day
        average = decision.minutes_used / days_elapsed if days_elapsed else 0.0
        percentage = (
            round(decision.minutes_used / decision.minutes_limit * 100.0, 1) if decision.minutes_limit else 100.0
        )
        return UsageSummary(
            decision=decision,
            month=now.strftime("%Y-%m"),
            percentage_used=percentage,
            days_remaining=days_in_month - days_elapsed,
            average_daily_usage=round(average, 2),
            projected_monthly_usage=round(average * days_in_month),
        )


_quota_service: QuotaService | None = None


def get_quota_service() -> QuotaService:
    global _quota_service
    if _quota_service is None:
        _quota_service = QuotaService()
    return _quota_service


def reset_quota_service() -> None:
    # Reset cached services for deterministic tests.
    global _quota_service
    _quota_service = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _month_start(now: datetime) -> datetime:
    # Usage periods are calendar months in UTC.
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


def quota_owner_id(*, user_id: str, organization_id: str | None) -> str:
    return organization_id or user_id


async def _monthly_limit(session: AsyncSession, *, user_id: str, organization_id: str | None) -> int:
    owner_id = quota_owner_id(user_id=user_id, organization_id=organization_id)
    plan = await session.get(PlanLimit, owner_id)
    if plan is None:
        return int(get_settings().default_monthly_minutes_limit)
    return int(plan.monthly_minutes_limit)


async def _minutes_used(
    session: AsyncSession,
    *,
    user_id: str,
    organization_id: str | None,
    since: datetime,
) -> int:
    # Organization usage is pooled across members; solo users count their own rows.
    stmt = select(func.count(UsageLedgerEntry.id)).where(UsageLedgerEntry.minute_timestamp >= since)
    if organization_id:
        stmt = stmt.where(UsageLedgerEntry.organization_id == organization_id)
    else:
        stmt = stmt.where(UsageLedgerEntry.user_id == user_id, UsageLedgerEntry.organization_id.is_(None))
    return int((await session.execute(stmt)).scalar_one() or 0)

