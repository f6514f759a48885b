from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from botledger.core.errors import (
    AgentError,
    AgentNotFoundError,
    AgentRequestError,
    ProviderConfigError,
    TransientAgentError,
)
from botledger.providers.agent.base import AgentBot, AgentBotStatus
from botledger.providers.agent.breaker import AgentCircuitBreaker
from botledger.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "agent.recall"


class RecallAgentClient:
    """Recording-agent client for the Recall bot API.

    Maps transport failures onto the agent error taxonomy: 404 becomes
    ``AgentNotFoundError``, throttling/5xx/timeouts become
    ``TransientAgentError`` and other rejections ``AgentRequestError``.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        timeout_ms: int,
        bot_name: str,
        breaker: AgentCircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ProviderConfigError("AGENT_API_KEY is required for the recall agent provider")
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_ms / 1000.0
        self._bot_name = bot_name
        self._breaker = breaker or AgentCircuitBreaker(_INTEGRATION)
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Token {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        read_body: bool = True,
    ) -> dict[str, Any]:
        async with self._breaker.guard():
            start = time.monotonic()
            try:
                payload = await self._send(method, path, json=json, read_body=read_body)
            except AgentNotFoundError:
                # The API answered; a missing bot says nothing about agent health.
                _record(start, success=True)
                raise
            except AgentError:
                _record(start, success=False)
                raise
            _record(start, success=True)
            return payload

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None,
        read_body: bool,
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise TransientAgentError(f"agent request timed out: {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise TransientAgentError(f"agent request failed: {method} {path}: {exc}") from exc

        status = response.status_code
        if status == 404:
            raise AgentNotFoundError(f"agent does not know {path}")
        if status == 429 or status >= 500:
            raise TransientAgentError(f"agent responded with status {status}: {method} {path}")
        if status >= 400:
            raise AgentRequestError(
                f"agent rejected {method} {path} with status {status}: {response.text[:200]}",
                status_code=status,
            )
        if not read_body or not response.content:
            return {}
        # Gateways in front of the agent can answer 2xx with an HTML page.
        try:
            payload = response.json()
        except ValueError as exc:
            raise TransientAgentError(f"agent returned a non-JSON body for {method} {path}") from exc
        if not isinstance(payload, dict):
            raise TransientAgentError(f"agent returned an unexpected body for {method} {path}")
        return payload

    async def deploy(self, meeting_url: str, *, metadata: dict[str, Any] | None = None) -> AgentBot:
        # The agent API only accepts string metadata values.
        string_metadata = {key: str(value) for key, value in (metadata or {}).items() if value is not None}
        body = {
            "meeting_url": meeting_url,
            "bot_name": self._bot_name,
            "metadata": string_metadata,
        }
        payload = await self._request("POST", "/bot", json=body)
        bot_id = payload.get("id")
        if not bot_id:
            raise AgentRequestError("agent deploy response is missing a bot id")
        logger.info("agent_bot_deployed bot_id=%s", bot_id)
        return AgentBot(
            id=str(bot_id),
            status=_latest_code(payload),
            metadata=dict(payload.get("metadata") or {}),
        )

    async def get_status(self, bot_id: str) -> AgentBotStatus:
        payload = await self._request("GET", f"/bot/{bot_id}")
        status_changes = payload.get("status_changes") or []
        return AgentBotStatus(
            bot_id=str(payload.get("id") or bot_id),
            status=_latest_code(payload),
            status_changes=[change for change in status_changes if isinstance(change, dict)],
            metadata=dict(payload.get("metadata") or {}),
        )

    async def stop(self, bot_id: str) -> None:
        try:
            await self._request("POST", f"/bot/{bot_id}/leave_call", read_body=False)
        except AgentNotFoundError:
            # Already gone counts as stopped.
            logger.info("agent_bot_stop_not_found bot_id=%s", bot_id)


def _latest_code(payload: dict[str, Any]) -> str | None:
    status = payload.get("status")
    if isinstance(status, dict) and status.get("code"):
        return str(status["code"])
    changes = payload.get("status_changes") or []
    if changes and isinstance(changes[-1], dict):
        code = changes[-1].get("code")
        return str(code) if code else None
    return None


def _record(start: float, *, success: bool) -> None:
    record_external_call(
        integration=_INTEGRATION,
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=success,
    )
