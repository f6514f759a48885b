from __future__ import annotations

from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from botledger.services.quota import QuotaDecision


class BotLedgerError(Exception):
    """Base error for botledger."""


class ValidationError(BotLedgerError):
    """Bad caller input; never retried."""


class SessionNotFoundError(BotLedgerError):
    """Referenced meeting session does not exist."""


class QuotaExceededError(BotLedgerError):
    """Recording quota exhausted for the session owner."""

    def __init__(self, decision: "QuotaDecision") -> None:
        super().__init__(
            f"monthly recording quota exhausted ({decision.minutes_used}/{decision.minutes_limit} minutes)"
        )
        self.decision = decision


class DeploymentFailedError(BotLedgerError):
    """Agent deployment failed after exhausting retries."""


class ProviderConfigError(BotLedgerError):
    """Missing or invalid provider configuration."""


class AgentError(BotLedgerError):
    """Recording-agent API failure."""


class TransientAgentError(AgentError):
    """Retryable agent failure (timeout, 5xx, throttling)."""


class IntegrationUnavailableError(TransientAgentError):
    """Circuit breaker is open for an external integration."""


class AgentNotFoundError(AgentError):
    """Agent does not know the bot id."""


class AgentRequestError(AgentError):
    """Agent rejected the request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DeliveryFailedError(BotLedgerError):
    """Single outbound webhook delivery attempt failed."""


class ReconciliationSkipped(BotLedgerError):
    """Bot history missing or unreachable; usage left for the next pass."""


class InvalidSignatureError(BotLedgerError):
    """Inbound webhook signature missing or invalid."""
