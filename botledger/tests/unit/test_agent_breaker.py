from __future__ import annotations

import asyncio

import pytest

from botledger.core.errors import (
    AgentNotFoundError,
    AgentRequestError,
    IntegrationUnavailableError,
    TransientAgentError,
)
from botledger.providers.agent.breaker import (
    AgentCircuitBreaker,
    BreakerSnapshot,
    BreakerThresholds,
    classify_agent_outcome,
)


def _breaker(clock: dict[str, float], *, failures_to_open: int = 2) -> AgentCircuitBreaker:
    return AgentCircuitBreaker(
        "agent.test",
        thresholds=BreakerThresholds(failures_to_open=failures_to_open, cooldown_s=30, trial_calls=1),
        clock=lambda: clock["now"],
    )


async def _fail(breaker: AgentCircuitBreaker) -> None:
    with pytest.raises(TransientAgentError):
        async with breaker.guard():
            raise TransientAgentError("agent responded with status 503")


def test_outcome_classification() -> None:
    assert classify_agent_outcome(None) == "healthy"
    assert classify_agent_outcome(TransientAgentError("timeout")) == "outage"
    assert classify_agent_outcome(AgentNotFoundError("gone")) == "healthy"
    assert classify_agent_outcome(AgentRequestError("bad url", status_code=400)) == "healthy"
    assert classify_agent_outcome(IntegrationUnavailableError("open")) is None
    assert classify_agent_outcome(asyncio.CancelledError()) is None


@pytest.mark.asyncio
async def test_breaker_opens_then_allows_one_trial_after_cooldown() -> None:
    clock = {"now": 1_000.0}
    breaker = _breaker(clock)

    await _fail(breaker)
    await _fail(breaker)

    with pytest.raises(IntegrationUnavailableError):
        await breaker.admit()

    clock["now"] += 31
    trial = await breaker.admit()
    assert trial.phase == "half_open"
    with pytest.raises(IntegrationUnavailableError):
        await breaker.admit()

    await breaker.observe(None)
    assert (await breaker.snapshot()).phase == "closed"


@pytest.mark.asyncio
async def test_failed_trial_reopens_the_breaker() -> None:
    clock = {"now": 1_000.0}
    breaker = _breaker(clock, failures_to_open=1)
    await _fail(breaker)

    clock["now"] += 31
    await _fail(breaker)

    snapshot = await breaker.snapshot()
    assert snapshot.phase == "open"
    assert snapshot.open_until == pytest.approx(clock["now"] + 30)


@pytest.mark.asyncio
async def test_rejections_reset_the_failure_streak() -> None:
    breaker = _breaker({"now": 1_000.0})
    await _fail(breaker)

    with pytest.raises(AgentRequestError):
        async with breaker.guard():
            raise AgentRequestError("bad meeting url", status_code=400)
    await _fail(breaker)

    snapshot = await breaker.snapshot()
    assert snapshot.phase == "closed"
    assert snapshot.consecutive_failures == 1


@pytest.mark.asyncio
async def test_cancelled_trial_releases_its_slot() -> None:
    clock = {"now": 1_000.0}
    breaker = _breaker(clock, failures_to_open=1)
    await _fail(breaker)
    clock["now"] += 31

    with pytest.raises(asyncio.CancelledError):
        async with breaker.guard():
            raise asyncio.CancelledError()

    assert (await breaker.admit()).phase == "half_open"


def test_snapshot_survives_redis_hash_round_trip() -> None:
    snapshot = BreakerSnapshot(phase="open", consecutive_failures=0, open_until=1_030.5, trials_in_flight=0)

    assert BreakerSnapshot.from_redis(snapshot.to_redis()) == snapshot
    assert BreakerSnapshot.from_redis({}) == BreakerSnapshot()
