from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from botledger.core.config import get_settings
from botledger.core.errors import TransientAgentError
from botledger.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError, TransientAgentError)


def backoff_delay_ms(retry_count: int, *, base_delay_ms: int, max_delay_ms: int) -> int:
    """Capped exponential backoff: ``min(base * 2**retry_count, max)``.

    ``retry_count`` is the number of failures recorded before the one being
    scheduled, so the first retry waits ``base`` and later ones double until
    the cap.
    """
    exponent = max(0, int(retry_count))
    # Large counts saturate at the cap without computing huge powers.
    if exponent >= 32:
        return int(max_delay_ms)
    return int(min(base_delay_ms * (2**exponent), max_delay_ms))


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # One backoff curve shared by agent deployment and webhook delivery.
    timeout_ms: int
    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int

    def delay_ms(self, retry_count: int) -> int:
        return backoff_delay_ms(retry_count, base_delay_ms=self.base_delay_ms, max_delay_ms=self.max_delay_ms)


def default_retry_policy(*, max_attempts: int | None = None) -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.agent_timeout_ms,
        max_attempts=max_attempts if max_attempts is not None else settings.deploy_max_attempts,
        base_delay_ms=settings.webhook_base_delay_ms,
        max_delay_ms=settings.webhook_max_delay_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    # Timeouts surface as TimeoutError and follow the same retry path as other transient failures.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("external_retries_total")
            delay_ms = policy.delay_ms(attempt - 1)
            logger.info("retry_scheduled attempt=%s delay_ms=%s error=%s", attempt, delay_ms, exc)
            await sleep(delay_ms / 1000.0)
            attempt += 1
