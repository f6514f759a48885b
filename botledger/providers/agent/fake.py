from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from botledger.core.errors import AgentNotFoundError, TransientAgentError
from botledger.providers.agent.base import AgentBot, AgentBotStatus


class FakeAgentClient:
    def __init__(self, *, transient_deploy_failures: int = 0) -> None:
        # Deterministic in-memory agent keeps local runs and tests free of network calls.
        self.bots: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.transient_deploy_failures = transient_deploy_failures
        self.unreachable: set[str] = set()

    def add_bot(
        self,
        bot_id: str,
        *,
        status_changes: list[dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self.bots[bot_id] = {
            "status_changes": list(status_changes or []),
            "metadata": dict(metadata or {}),
        }

    def push_status(self, bot_id: str, code: str, created_at: datetime | None = None) -> None:
        created_at = created_at or datetime.now(timezone.utc)
        self.bots[bot_id]["status_changes"].append({"code": code, "created_at": created_at.isoformat()})

    async def deploy(self, meeting_url: str, *, metadata: dict[str, Any] | None = None) -> AgentBot:
        self.calls.append(("deploy", meeting_url))
        if self.transient_deploy_failures > 0:
            self.transient_deploy_failures -= 1
            raise TransientAgentError("fake agent deploy failure")
        bot_id = f"bot-{uuid4().hex[:12]}"
        self.add_bot(bot_id, metadata=metadata)
        self.push_status(bot_id, "ready")
        return AgentBot(id=bot_id, status="ready", metadata=dict(metadata or {}))

    async def get_status(self, bot_id: str) -> AgentBotStatus:
        self.calls.append(("get_status", bot_id))
        if bot_id in self.unreachable:
            raise TransientAgentError(f"fake agent unreachable for {bot_id}")
        bot = self.bots.get(bot_id)
        if bot is None:
            raise AgentNotFoundError(f"unknown bot {bot_id}")
        changes = bot["status_changes"]
        return AgentBotStatus(
            bot_id=bot_id,
            status=changes[-1]["code"] if changes else None,
            status_changes=[dict(change) for change in changes],
            metadata=dict(bot["metadata"]),
        )

    async def stop(self, bot_id: str) -> None:
        self.calls.append(("stop", bot_id))
        bot = self.bots.get(bot_id)
        if bot is None:
            return
        self.push_status(bot_id, "call_ended")
        self.push_status(bot_id, "done")
