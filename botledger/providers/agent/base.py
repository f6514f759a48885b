from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class AgentBot:
    id: str
    status: str | None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AgentBotStatus:
    # status_changes stay raw; the usage event log owns normalization.
    bot_id: str
    status: str | None
    status_changes: list[dict[str, Any]] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


class RecordingAgentClient(Protocol):
    async def deploy(self, meeting_url: str, *, metadata: dict[str, Any] | None = None) -> AgentBot:
        ...

    async def get_status(self, bot_id: str) -> AgentBotStatus:
        ...

    async def stop(self, bot_id: str) -> None:
        ...
