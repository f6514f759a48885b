from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import time
from typing import AsyncIterator, Callable, Literal

from redis.asyncio import Redis

from botledger.core.config import Settings, get_settings
from botledger.core.errors import AgentError, IntegrationUnavailableError, TransientAgentError
from botledger.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

AgentOutcome = Literal["healthy", "outage"]


def classify_agent_outcome(exc: BaseException | None) -> AgentOutcome | None:
    """Decide what a finished agent call says about the agent API's health.

    Only transient failures (timeouts, 5xx, throttling, unreadable bodies)
    count as an outage. Any other agent answer, a 404 or a rejected request
    included, proves the API reachable. ``None`` means the call carries no
    signal, e.g. it was cancelled or short-circuited by this breaker.
    """
    if exc is None:
        return "healthy"
    if isinstance(exc, IntegrationUnavailableError):
        return None
    if isinstance(exc, TransientAgentError):
        return "outage"
    if isinstance(exc, AgentError):
        return "healthy"
    return None


@dataclass(frozen=True)
class BreakerThresholds:
    failures_to_open: int
    cooldown_s: int
    trial_calls: int = 1

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "BreakerThresholds":
        settings = settings or get_settings()
        return cls(
            failures_to_open=settings.cb_failure_threshold,
            cooldown_s=settings.cb_open_seconds,
            trial_calls=settings.cb_half_open_trials,
        )


@dataclass
class BreakerSnapshot:
    # open_until is wall-clock epoch seconds so API and worker processes agree on it.
    phase: str = CLOSED
    consecutive_failures: int = 0
    open_until: float | None = None
    trials_in_flight: int = 0

    def to_redis(self) -> dict[str, str]:
        return {
            "phase": self.phase,
            "consecutive_failures": str(self.consecutive_failures),
            "open_until": "" if self.open_until is None else str(self.open_until),
            "trials_in_flight": str(self.trials_in_flight),
        }

    @classmethod
    def from_redis(cls, raw: dict[str, str]) -> "BreakerSnapshot":
        open_until = raw.get("open_until")
        return cls(
            phase=raw.get("phase") or CLOSED,
            consecutive_failures=int(raw.get("consecutive_failures") or 0),
            open_until=float(open_until) if open_until else None,
            trials_in_flight=int(raw.get("trials_in_flight") or 0),
        )


class AgentCircuitBreaker:
    """Fail fast while the recording-agent API is down.

    State lives in Redis when a client is given (the worker passes its own),
    otherwise in the process. Wrap each agent request in ``guard()``.
    """

    def __init__(
        self,
        integration: str,
        *,
        redis: Redis | None = None,
        thresholds: BreakerThresholds | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.integration = integration
        self._redis = redis
        self._thresholds = thresholds or BreakerThresholds.from_settings()
        self._clock = clock or time.time
        self._local = BreakerSnapshot()

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self.integration}"

    async def snapshot(self) -> BreakerSnapshot:
        if self._redis is None:
            return self._local
        raw = await self._redis.hgetall(self._key())
        return BreakerSnapshot.from_redis(raw) if raw else BreakerSnapshot()

    async def _store(self, snapshot: BreakerSnapshot) -> None:
        if self._redis is None:
            self._local = snapshot
            return
        key = self._key()
        await self._redis.hset(key, mapping=snapshot.to_redis())
        # An idle breaker expires back to closed.
        await self._redis.expire(key, max(self._thresholds.cooldown_s * 4, 60))

    def _enter(self, current: BreakerSnapshot, phase: str) -> BreakerSnapshot:
        if current.phase != phase:
            logger.warning(
                "agent_breaker_transition integration=%s from=%s to=%s",
                self.integration,
                current.phase,
                phase,
            )
            increment_counter(f"agent_breaker_{phase}_total.{self.integration}")
            set_gauge(f"agent_breaker_open.{self.integration}", 1.0 if phase == OPEN else 0.0)
        open_until = self._clock() + self._thresholds.cooldown_s if phase == OPEN else None
        return BreakerSnapshot(phase=phase, open_until=open_until)

    async def admit(self) -> BreakerSnapshot:
        snapshot = await self.snapshot()
        if snapshot.phase == OPEN:
            if snapshot.open_until is not None and self._clock() < snapshot.open_until:
                increment_counter(f"agent_breaker_rejected_total.{self.integration}")
                raise IntegrationUnavailableError(f"{self.integration} is cooling down after repeated failures")
            snapshot = self._enter(snapshot, HALF_OPEN)
        if snapshot.phase == HALF_OPEN:
            if snapshot.trials_in_flight >= self._thresholds.trial_calls:
                raise IntegrationUnavailableError(f"{self.integration} is waiting on a trial call")
            snapshot.trials_in_flight += 1
            await self._store(snapshot)
        return snapshot

    async def observe(self, exc: BaseException | None) -> None:
        outcome = classify_agent_outcome(exc)
        snapshot = await self.snapshot()
        if outcome is None:
            if snapshot.phase == HALF_OPEN and snapshot.trials_in_flight:
                # Give the trial slot back so the next call can try.
                snapshot.trials_in_flight -= 1
                await self._store(snapshot)
            return
        if outcome == "healthy":
            if snapshot.phase != CLOSED or snapshot.consecutive_failures:
                await self._store(self._enter(snapshot, CLOSED))
            return
        failures = snapshot.consecutive_failures + 1
        if snapshot.phase == HALF_OPEN or failures >= self._thresholds.failures_to_open:
            await self._store(self._enter(snapshot, OPEN))
            return
        snapshot.consecutive_failures = failures
        await self._store(snapshot)

    @asynccontextmanager
    async def guard(self) -> AsyncIterator[BreakerSnapshot]:
        snapshot = await self.admit()
        try:
            yield snapshot
        except BaseException as exc:
            await self.observe(exc)
            raise
        await self.observe(None)
