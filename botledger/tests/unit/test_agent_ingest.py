from __future__ import annotations

from datetime import datetime, timezone
import json

import pytest

from botledger.core.errors import InvalidSignatureError
from botledger.domain.models import MeetingSession
from botledger.persistence.db import SessionLocal
from botledger.persistence.repos.usage import list_ledger_entries, list_status_events
from botledger.services.usage.ingest import (
    build_agent_signature,
    ingest_agent_event,
    verify_agent_signature,
)
from botledger.tests.utils.factories import agent_webhook, seed_session

NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)


async def _ingest(payload: dict):
    async with SessionLocal() as session:
        result = await ingest_agent_event(session, payload=payload)
        await session.commit()
        return result


def test_signature_roundtrip_accepts_valid_signature() -> None:
    body = json.dumps({"event": "bot.done"}).encode("utf-8")
    timestamp = str(int(NOW.timestamp()))
    signature = build_agent_signature("agent-secret", timestamp, body)

    verify_agent_signature(secret="agent-secret", signature=signature, timestamp=timestamp, body=body, now=NOW)


def test_signature_mismatch_is_rejected() -> None:
    body = b'{"event":"bot.done"}'
    timestamp = str(int(NOW.timestamp()))
    signature = build_agent_signature("agent-secret", timestamp, body)

    with pytest.raises(InvalidSignatureError):
        verify_agent_signature(
            secret="agent-secret",
            signature=signature,
            timestamp=timestamp,
            body=b'{"event":"bot.fatal"}',
            now=NOW,
        )


def test_stale_signature_timestamp_is_rejected() -> None:
    body = b"{}"
    timestamp = str(int(NOW.timestamp()) - 3600)
    signature = build_agent_signature("agent-secret", timestamp, body)

    with pytest.raises(InvalidSignatureError):
        verify_agent_signature(
            secret="agent-secret",
            signature=signature,
            timestamp=timestamp,
            body=body,
            max_skew_s=300,
            now=NOW,
        )


def test_missing_headers_are_rejected_only_when_secret_set() -> None:
    verify_agent_signature(secret=None, signature=None, timestamp=None, body=b"{}")
    with pytest.raises(InvalidSignatureError):
        verify_agent_signature(secret="agent-secret", signature=None, timestamp=None, body=b"{}")


@pytest.mark.asyncio
async def test_live_path_bills_recording_from_mirrored_events() -> None:
    meeting = await seed_session(bot_id="bot-live")

    joining = await _ingest(agent_webhook("bot-live", "joining_call", -5))
    started = await _ingest(agent_webhook("bot-live", "in_call_recording", 0))
    ended = await _ingest(agent_webhook("bot-live", "call_ended", 125))

    assert joining.outcome == "recorded"
    assert started.outcome == "reconciled"
    assert started.record.status == "active"
    assert ended.outcome == "reconciled"
    assert ended.record.billable_minutes == 3
    async with SessionLocal() as session:
        entries = await list_ledger_entries(session, meeting.id)
        refreshed = await session.get(MeetingSession, meeting.id)
    assert [entry.seconds_recorded for entry in entries] == [60, 60, 5]
    assert refreshed.bot_status == "call_ended"
    assert refreshed.billable_minutes == 3


@pytest.mark.asyncio
async def test_out_of_order_webhooks_reach_the_same_result() -> None:
    meeting = await seed_session(bot_id="bot-late")

    await _ingest(agent_webhook("bot-late", "call_ended", 125))
    result = await _ingest(agent_webhook("bot-late", "in_call_recording", 0))

    assert result.record.billable_minutes == 3
    async with SessionLocal() as session:
        entries = await list_ledger_entries(session, meeting.id)
    assert len(entries) == 3


@pytest.mark.asyncio
async def test_duplicate_webhook_is_ignored() -> None:
    meeting = await seed_session(bot_id="bot-dup")
    await _ingest(agent_webhook("bot-dup", "in_call_recording", 0))
    await _ingest(agent_webhook("bot-dup", "call_ended", 61))

    duplicate = await _ingest(agent_webhook("bot-dup", "call_ended", 61))

    assert duplicate.outcome == "duplicate"
    async with SessionLocal() as session:
        events = await list_status_events(session, "bot-dup")
        entries = await list_ledger_entries(session, meeting.id)
    assert len(events) == 2
    assert len(entries) == 2


@pytest.mark.asyncio
async def test_non_bot_events_are_ignored() -> None:
    result = await _ingest({"event": "calendar.sync_events", "data": {}})

    assert result.outcome == "ignored"


@pytest.mark.asyncio
async def test_unknown_bot_is_mirrored_but_not_billed() -> None:
    result = await _ingest(agent_webhook("bot-stranger", "done", 30))

    assert result.outcome == "recorded"
    async with SessionLocal() as session:
        events = await list_status_events(session, "bot-stranger")
    assert len(events) == 1
