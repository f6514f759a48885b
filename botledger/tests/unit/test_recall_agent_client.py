from __future__ import annotations

import json

import httpx
import pytest

from botledger.core.errors import (
    AgentNotFoundError,
    AgentRequestError,
    IntegrationUnavailableError,
    ProviderConfigError,
    TransientAgentError,
)
from botledger.providers.agent.breaker import AgentCircuitBreaker, BreakerThresholds
from botledger.providers.agent.recall import RecallAgentClient


def _client(handler, *, breaker: AgentCircuitBreaker | None = None) -> RecallAgentClient:
    return RecallAgentClient(
        api_key="rk-test",
        base_url="https://agent.example.test/api/v1",
        timeout_ms=2000,
        bot_name="Notetaker",
        breaker=breaker,
        transport=httpx.MockTransport(handler),
    )


def test_missing_api_key_is_a_config_error() -> None:
    with pytest.raises(ProviderConfigError):
        RecallAgentClient(api_key=None, base_url="https://agent.example.test", timeout_ms=1000, bot_name="x")


@pytest.mark.asyncio
async def test_deploy_posts_bot_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            201,
            json={"id": "bot-42", "status_changes": [{"code": "ready", "created_at": "2026-03-10T15:00:00Z"}]},
        )

    bot = await _client(handler).deploy("https://meet.google.com/abc", metadata={"session_id": "s-1", "org": None})

    assert bot.id == "bot-42"
    assert bot.status == "ready"
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/api/v1/bot"
    assert request.headers["Authorization"] == "Token rk-test"
    body = json.loads(request.content)
    assert body == {"meeting_url": "https://meet.google.com/abc", "bot_name": "Notetaker", "metadata": {"session_id": "s-1"}}


@pytest.mark.asyncio
async def test_get_status_returns_raw_history() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/bot/bot-42"
        return httpx.Response(
            200,
            json={
                "id": "bot-42",
                "metadata": {"session_id": "s-1"},
                "status_changes": [
                    {"code": "in_call_recording", "created_at": "2026-03-10T15:00:00Z"},
                    {"code": "done", "created_at": "2026-03-10T15:02:05Z"},
                ],
            },
        )

    status = await _client(handler).get_status("bot-42")

    assert status.status == "done"
    assert [change["code"] for change in status.status_changes] == ["in_call_recording", "done"]
    assert status.metadata == {"session_id": "s-1"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "error"),
    [(404, AgentNotFoundError), (429, TransientAgentError), (503, TransientAgentError), (400, AgentRequestError)],
)
async def test_status_codes_map_to_agent_errors(status_code: int, error: type[Exception]) -> None:
    client = _client(lambda request: httpx.Response(status_code, json={"detail": "nope"}))

    with pytest.raises(error):
        await client.get_status("bot-42")


@pytest.mark.asyncio
async def test_network_errors_are_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(TransientAgentError):
        await _client(handler).get_status("bot-42")


@pytest.mark.asyncio
async def test_stop_tolerates_unknown_bot() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(404)

    await _client(handler).stop("bot-gone")

    assert seen == ["/api/v1/bot/bot-gone/leave_call"]


@pytest.mark.asyncio
async def test_open_breaker_short_circuits_calls() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503)

    breaker = AgentCircuitBreaker("agent.recall", thresholds=BreakerThresholds(failures_to_open=2, cooldown_s=60))
    client = _client(handler, breaker=breaker)
    for _ in range(2):
        with pytest.raises(TransientAgentError):
            await client.get_status("bot-42")

    with pytest.raises(IntegrationUnavailableError):
        await client.get_status("bot-42")
    assert calls["count"] == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"<html>gateway</html>", b"[1, 2]"])
async def test_unreadable_success_body_is_transient(body: bytes) -> None:
    client = _client(lambda request: httpx.Response(200, content=body, headers={"Content-Type": "text/html"}))

    with pytest.raises(TransientAgentError):
        await client.get_status("bot-42")
    with pytest.raises(TransientAgentError):
        await client.deploy("https://meet.google.com/abc")


@pytest.mark.asyncio
async def test_stop_ignores_leave_call_body() -> None:
    await _client(lambda request: httpx.Response(200, content=b"ok")).stop("bot-42")


@pytest.mark.asyncio
async def test_unknown_bots_do_not_open_the_breaker() -> None:
    breaker = AgentCircuitBreaker("agent.recall", thresholds=BreakerThresholds(failures_to_open=1, cooldown_s=60))
    client = _client(lambda request: httpx.Response(404), breaker=breaker)

    for _ in range(3):
        with pytest.raises(AgentNotFoundError):
            await client.get_status("bot-gone")

    assert (await breaker.snapshot()).phase == "closed"
