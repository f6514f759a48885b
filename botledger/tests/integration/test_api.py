from __future__ import annotations

import json
import time

import pytest
from httpx import ASGITransport, AsyncClient

from botledger.apps.api.main import create_app
from botledger.domain.models import DeadLetterEntry
from botledger.persistence.db import SessionLocal
from botledger.providers.agent.factory import get_agent_client
from botledger.services.usage.ingest import build_agent_signature
from botledger.tests.utils.factories import (
    agent_webhook,
    apply_env,
    seed_plan_limit,
    seed_session,
    status_change,
)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


def _signed(payload: dict, secret: str) -> tuple[bytes, dict[str, str]]:
    body = json.dumps(payload).encode("utf-8")
    timestamp = str(int(time.time()))
    headers = {
        "Content-Type": "application/json",
        "X-Agent-Timestamp": timestamp,
        "X-Agent-Signature": build_agent_signature(secret, timestamp, body),
    }
    return body, headers


@pytest.mark.asyncio
async def test_health_is_plain_unversioned_and_enveloped_under_v1() -> None:
    async with _client() as client:
        plain = await client.get("/health")
        versioned = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})

    assert plain.status_code == 200
    assert plain.json() == {"status": "ok", "database": "ok"}
    body = versioned.json()
    assert body["data"]["status"] == "ok"
    assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
    assert versioned.headers["X-Request-Id"] == "req-123"


@pytest.mark.asyncio
async def test_deploy_bot_endpoint() -> None:
    meeting = await seed_session()

    async with _client() as client:
        response = await client.post(f"/v1/sessions/{meeting.id}/deploy-bot", json={})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["session_id"] == meeting.id
    assert data["bot_id"].startswith("bot-")
    assert data["meeting_platform"] == "zoom"


@pytest.mark.asyncio
async def test_deploy_unknown_session_returns_not_found() -> None:
    async with _client() as client:
        response = await client.post("/v1/sessions/missing/deploy-bot")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_deploy_with_exhausted_quota_returns_402() -> None:
    meeting = await seed_session(user_id="u-broke")
    await seed_plan_limit("u-broke", 0)

    async with _client() as client:
        response = await client.post(f"/v1/sessions/{meeting.id}/deploy-bot")

    assert response.status_code == 402
    error = response.json()["error"]
    assert error["code"] == "QUOTA_EXCEEDED"
    assert error["details"]["minutes_limit"] == 0
    assert error["details"]["minutes_remaining"] == 0


@pytest.mark.asyncio
async def test_deploy_with_bad_url_returns_validation_error() -> None:
    meeting = await seed_session()

    async with _client() as client:
        response = await client.post(f"/v1/sessions/{meeting.id}/deploy-bot", json={"meeting_url": "not a url"})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_deploy_failure_returns_502(monkeypatch) -> None:
    apply_env(monkeypatch, WEBHOOK_BASE_DELAY_MS=1, WEBHOOK_MAX_DELAY_MS=2)
    meeting = await seed_session()
    get_agent_client().transient_deploy_failures = 10

    async with _client() as client:
        response = await client.post(f"/v1/sessions/{meeting.id}/deploy-bot", json={"max_attempts": 2})

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "DEPLOYMENT_FAILED"


@pytest.mark.asyncio
async def test_recording_flow_updates_current_month_usage(monkeypatch) -> None:
    apply_env(monkeypatch, AGENT_WEBHOOK_SECRET="agent-secret")
    meeting = await seed_session(user_id="u-flow")

    async with _client() as client:
        deployed = await client.post(f"/v1/sessions/{meeting.id}/deploy-bot")
        bot_id = deployed.json()["data"]["bot_id"]
        # Recording inside the current month so the quota counts it.
        start = time.time() - 130
        for code, offset in (("in_call_recording", 0), ("call_ended", 125)):
            payload = agent_webhook(bot_id, code, 0, session_id=meeting.id)
            payload["data"]["data"]["updated_at"] = start + offset
            body, headers = _signed(payload, "agent-secret")
            response = await client.post("/v1/agent-webhooks", content=body, headers=headers)
            assert response.status_code == 200
        usage = await client.get("/v1/usage/current-month", params={"user_id": "u-flow"})

    assert response.json()["data"]["usage"]["billable_minutes"] == 3
    data = usage.json()["data"]
    assert data["minutes_used"] == 3
    assert data["minutes_limit"] == 600
    assert data["allowed"] is True


@pytest.mark.asyncio
async def test_agent_webhook_rejects_bad_signature(monkeypatch) -> None:
    apply_env(monkeypatch, AGENT_WEBHOOK_SECRET="agent-secret")
    body, headers = _signed(agent_webhook("bot-1", "done", 0), "wrong-secret")

    async with _client() as client:
        response = await client.post("/v1/agent-webhooks", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_agent_webhook_rejects_non_json_body() -> None:
    async with _client() as client:
        response = await client.post("/v1/agent-webhooks", content=b"not json")

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_stop_bot_endpoint() -> None:
    meeting = await seed_session()

    async with _client() as client:
        await client.post(f"/v1/sessions/{meeting.id}/deploy-bot")
        response = await client.post(f"/v1/sessions/{meeting.id}/stop-bot")

    assert response.status_code == 200
    assert response.json()["data"]["stop_requested"] is True


@pytest.mark.asyncio
async def test_webhook_admin_sweep_and_listing(monkeypatch) -> None:
    apply_env(monkeypatch, LIFECYCLE_WEBHOOK_URL="noop://lifecycle")
    meeting = await seed_session()

    async with _client() as client:
        await client.post(f"/v1/sessions/{meeting.id}/deploy-bot")
        pending = await client.get("/v1/admin/webhooks/jobs", params={"status": "pending"})
        swept = await client.post("/v1/admin/webhooks/process", json={"limit": 5})
        completed = await client.get("/v1/admin/webhooks/jobs", params={"status": "completed"})

    assert [job["event_type"] for job in pending.json()["data"]] == ["bot_deployed"]
    assert swept.json()["data"]["completed"] == 1
    assert len(completed.json()["data"]) == 1


@pytest.mark.asyncio
async def test_dead_letter_replay_endpoint() -> None:
    async with SessionLocal() as session:
        entry = DeadLetterEntry(
            original_job_id="job-1",
            webhook_type="bot_lifecycle",
            event_type="bot_deployed",
            url="noop://lifecycle",
            payload={"event": "bot_deployed"},
            retry_count=3,
            errors_json=[],
        )
        session.add(entry)
        await session.commit()
        entry_id = entry.id

    async with _client() as client:
        listed = await client.get("/v1/admin/webhooks/dead-letters")
        replayed = await client.post(f"/v1/admin/webhooks/dead-letters/{entry_id}/replay", json={"max_retries": 5})
        missing = await client.post("/v1/admin/webhooks/dead-letters/missing/replay")

    assert listed.json()["data"][0]["id"] == entry_id
    assert replayed.status_code == 200
    assert replayed.json()["data"]["replayed_from_dead_letter_id"] == entry_id
    assert replayed.json()["data"]["max_retries"] == 5
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_admin_reconcile_and_backfill() -> None:
    meeting = await seed_session(bot_id="bot-admin")
    agent = get_agent_client()
    agent.add_bot("bot-admin", status_changes=[status_change("in_call_recording", 0), status_change("done", 61)])

    async with _client() as client:
        reconciled = await client.post("/v1/admin/usage/bots/bot-admin/reconcile")
        unknown = await client.post("/v1/admin/usage/bots/bot-nobody/reconcile")
        backfill = await client.post("/v1/admin/usage/backfill", json={"delay_s": 0})
        metrics = await client.get("/v1/admin/metrics")

    assert reconciled.status_code == 200
    assert reconciled.json()["data"]["billable_minutes"] == 2
    assert reconciled.json()["data"]["session_id"] == meeting.id
    assert unknown.status_code == 404
    # Already billed, so nothing is left for the backfill.
    assert backfill.json()["data"]["scanned"] == 0
    assert metrics.json()["data"]["counters"]["usage_reconciled_total"] == 1
