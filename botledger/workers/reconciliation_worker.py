from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from redis.asyncio import Redis

from botledger.core.config import get_settings
from botledger.core.logging import configure_logging
from botledger.persistence.db import SessionLocal
from botledger.providers.agent.factory import get_agent_client
from botledger.services.telemetry import increment_counter, set_gauge
from botledger.services.usage.reconciliation import backfill_all, monitor_active_bots
from botledger.services.webhooks import process_pending_webhooks

logger = logging.getLogger(__name__)


async def process_webhooks(*, limit: int | None = None) -> dict[str, int]:
    async with SessionLocal() as session:
        result = await process_pending_webhooks(session, limit=limit)
    return result.as_dict()


async def run_backfill(*, redis: Redis | None = None, limit: int | None = None) -> dict[str, int]:
    result = await backfill_all(SessionLocal, limit=limit, agent=get_agent_client(redis=redis))
    return result.as_dict()


async def reconcile_active_bots(*, redis: Redis | None = None) -> dict[str, int]:
    result = await monitor_active_bots(SessionLocal, agent=get_agent_client(redis=redis))
    return result.as_dict()


async def run_job(name: str, job: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any] | None:
    # One failed tick must not unschedule the job; the next tick retries the same work.
    try:
        result = await job()
    except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
        increment_counter(f"worker_job_failed_total.{name}")
        logger.exception("%s job failed", name)
        return None
    set_gauge(f"worker_job_last_success_ts.{name}", time.time())
    return result


def build_scheduler(*, redis: Redis | None = None) -> AsyncIOScheduler:
    """Register the webhook sweep, usage backfill and bot monitor on one scheduler.

    Each job coalesces missed runs and never overlaps itself, so a slow
    backfill simply delays its next tick.
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler(job_defaults={"coalesce": True, "max_instances": 1})
    jobs: list[tuple[str, float, Callable[[], Awaitable[dict[str, Any]]]]] = [
        ("webhook_sweep", max(0.5, settings.webhook_poll_interval_s), process_webhooks),
        ("usage_backfill", max(1, settings.backfill_interval_s), lambda: run_backfill(redis=redis)),
        ("bot_monitor", max(1, settings.bot_monitor_interval_s), lambda: reconcile_active_bots(redis=redis)),
    ]
    for name, interval_s, job in jobs:
        scheduler.add_job(
            run_job,
            trigger=IntervalTrigger(seconds=interval_s),
            args=[name, job],
            id=name,
            name=name.replace("_", " "),
            replace_existing=True,
        )
    return scheduler


async def run_worker() -> None:
    # Shared Redis keeps circuit breaker state consistent with the API processes.
    configure_logging()
    settings = get_settings()
    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    scheduler = build_scheduler(redis=redis)
    scheduler.start()
    logger.info("reconciliation_worker_started jobs=%s", ",".join(job.id for job in scheduler.get_jobs()))
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await redis.aclose()
