from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from botledger.domain.models import UsageLedgerEntry
from botledger.persistence.db import SessionLocal
from botledger.services.quota import QuotaDecision, QuotaService
from botledger.tests.utils.factories import seed_plan_limit

NOW = datetime(2026, 4, 11, 12, 0, tzinfo=timezone.utc)


async def _seed_minutes(
    count: int,
    *,
    user_id: str,
    organization_id: str | None = None,
    start: datetime = NOW - timedelta(days=1),
) -> None:
    session_id = f"s-{uuid4().hex[:8]}"
    async with SessionLocal() as session:
        for index in range(count):
            session.add(
                UsageLedgerEntry(
                    user_id=user_id,
                    organization_id=organization_id,
                    session_id=session_id,
                    bot_id="bot-1",
                    minute_timestamp=start + timedelta(minutes=index),
                    seconds_recorded=60,
                    metadata_json={},
                )
            )
        await session.commit()


def _service() -> QuotaService:
    return QuotaService(time_provider=lambda: NOW)


@pytest.mark.asyncio
async def test_default_limit_applies_without_plan_row() -> None:
    await _seed_minutes(5, user_id="u-1")

    async with SessionLocal() as session:
        decision = await _service().can_record(session, user_id="u-1", organization_id=None)

    assert decision == QuotaDecision(allowed=True, minutes_used=5, minutes_limit=600, minutes_remaining=595)


@pytest.mark.asyncio
async def test_exhausted_plan_denies_recording() -> None:
    await seed_plan_limit("u-2", 3)
    await _seed_minutes(4, user_id="u-2")

    async with SessionLocal() as session:
        decision = await _service().can_record(session, user_id="u-2", organization_id=None)

    assert decision.allowed is False
    assert decision.minutes_used == 4
    assert decision.minutes_remaining == 0


@pytest.mark.asyncio
async def test_organization_usage_is_pooled() -> None:
    await seed_plan_limit("org-1", 10)
    await _seed_minutes(4, user_id="u-a", organization_id="org-1")
    await _seed_minutes(3, user_id="u-b", organization_id="org-1")
    # Solo minutes of a member do not count toward the organization.
    await _seed_minutes(9, user_id="u-a")

    async with SessionLocal() as session:
        decision = await _service().can_record(session, user_id="u-a", organization_id="org-1")

    assert decision.minutes_used == 7
    assert decision.minutes_remaining == 3


@pytest.mark.asyncio
async def test_previous_month_minutes_are_not_counted() -> None:
    await _seed_minutes(2, user_id="u-3", start=datetime(2026, 3, 31, 23, 59, tzinfo=timezone.utc))

    async with SessionLocal() as session:
        decision = await _service().can_record(session, user_id="u-3", organization_id=None)

    # 23:59 is March; 00:00 on April 1st is the first counted minute.
    assert decision.minutes_used == 1


@pytest.mark.asyncio
async def test_usage_summary_projects_month_end() -> None:
    await seed_plan_limit("u-4", 300)
    await _seed_minutes(55, user_id="u-4")

    async with SessionLocal() as session:
        summary = await _service().usage_summary(session, user_id="u-4", organization_id=None)

    assert summary.month == "2026-04"
    assert summary.days_remaining == 19
    assert summary.average_daily_usage == 5.0
    assert summary.projected_monthly_usage == 150
    assert summary.percentage_used == pytest.approx(18.3)


def test_quota_decision_as_dict_carries_minutes() -> None:
    decision = QuotaDecision(allowed=False, minutes_used=600, minutes_limit=600, minutes_remaining=0)

    assert decision.as_dict() == {
        "allowed": False,
        "minutes_used": 600,
        "minutes_limit": 600,
        "minutes_remaining": 0,
    }
