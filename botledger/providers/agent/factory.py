from __future__ import annotations

from redis.asyncio import Redis

from botledger.core.config import get_settings
from botledger.core.errors import ProviderConfigError
from botledger.providers.agent.base import RecordingAgentClient
from botledger.providers.agent.fake import FakeAgentClient
from botledger.providers.agent.recall import RecallAgentClient
from botledger.providers.agent.breaker import AgentCircuitBreaker


_fake_client: FakeAgentClient | None = None


def get_agent_client(*, redis: Redis | None = None) -> RecordingAgentClient:
    # Pass the worker's Redis so breaker state is shared across processes.
    settings = get_settings()
    provider = (settings.agent_provider or "fake").lower()

    if provider == "fake":
        # One shared fake so deploys and later status reads see the same bots.
        global _fake_client
        if _fake_client is None:
            _fake_client = FakeAgentClient()
        return _fake_client
    if provider == "recall":
        return RecallAgentClient(
            api_key=settings.agent_api_key,
            base_url=settings.agent_api_base_url,
            timeout_ms=settings.agent_timeout_ms,
            bot_name=settings.agent_bot_name,
            breaker=AgentCircuitBreaker("agent.recall", redis=redis),
        )
    raise ProviderConfigError(f"unknown agent provider: {provider}")


def reset_agent_client() -> None:
    global _fake_client
    _fake_client = None
