from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import hmac
import json
import logging
import time
from typing import Any

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from botledger.core.config import get_settings
from botledger.core.errors import DeliveryFailedError, ValidationError
from botledger.domain.models import DeadLetterEntry, WebhookJob
from botledger.services.resilience import backoff_delay_ms
from botledger.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_SIGNATURE_PREFIX = "v1="


@dataclass
class SweepResult:
    recovered: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    dead_lettered: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "recovered": self.recovered,
            "claimed": self.claimed,
            "completed": self.completed,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
        }


def _utc_now() -> datetime:
    # Keep retry bookkeeping in UTC for deterministic comparisons.
    return datetime.now(timezone.utc)


def _validate_url(url: str) -> str:
    normalized = (url or "").strip()
    if normalized.startswith(("http://", "https://", "noop://")):
        return normalized
    raise ValidationError("webhook url must start with http://, https://, or noop://")


def _serialize_payload(payload: dict[str, Any]) -> bytes:
    # Deterministic bytes keep signatures stable across retries.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


def build_webhook_signature(secret: str, timestamp: str, body: bytes) -> str:
    signed = timestamp.encode("utf-8") + b"." + body
    return _SIGNATURE_PREFIX + hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def retry_delay(retry_count: int) -> timedelta:
    """Delay before the next attempt after ``retry_count`` earlier failures."""
    settings = get_settings()
    delay_ms = backoff_delay_ms(
        retry_count,
        base_delay_ms=settings.webhook_base_delay_ms,
        max_delay_ms=settings.webhook_max_delay_ms,
    )
    return timedelta(milliseconds=delay_ms)


def _delivery_headers(job: WebhookJob, body: bytes) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "X-Webhook-Job-Id": job.id,
        "X-Retry-Count": str(job.retry_count),
        "X-Webhook-Type": job.webhook_type,
        "X-Event-Type": job.event_type,
    }
    secret = get_settings().webhook_signing_secret
    if secret:
        timestamp = str(int(time.time()))
        headers["X-Webhook-Timestamp"] = timestamp
        headers["X-Webhook-Signature"] = build_webhook_signature(secret, timestamp, body)
    return headers


async def enqueue_webhook(
    session: AsyncSession,
    *,
    url: str,
    payload: dict[str, Any],
    webhook_type: str,
    event_type: str,
    max_retries: int | None = None,
    replayed_from_dead_letter_id: str | None = None,
) -> WebhookJob:
    """Insert a pending delivery job that is due immediately.

    The caller owns the transaction; delivery outcomes surface later through
    the sweep and the dead-letter queue, never through this call.
    """
    settings = get_settings()
    budget = settings.webhook_max_retries if max_retries is None else int(max_retries)
    if budget < 1:
        raise ValidationError("max_retries must be at least 1")
    job = WebhookJob(
        url=_validate_url(url),
        payload=payload,
        webhook_type=webhook_type,
        event_type=event_type,
        status=STATUS_PENDING,
        retry_count=0,
        max_retries=budget,
        next_retry_at=_utc_now(),
        errors_json=[],
        replayed_from_dead_letter_id=replayed_from_dead_letter_id,
    )
    session.add(job)
    await session.flush()
    increment_counter("webhook_jobs_enqueued_total")
    logger.info(
        "webhook_job_enqueued job_id=%s webhook_type=%s event_type=%s",
        job.id,
        webhook_type,
        event_type,
    )
    return job


async def recover_stuck_webhook_jobs(
    session: AsyncSession,
    *,
    lease_seconds: int | None = None,
    now: datetime | None = None,
) -> int:
    # A crashed worker leaves its claim behind; expired leases go back to pending without spending budget.
    settings = get_settings()
    lease = settings.webhook_lease_seconds if lease_seconds is None else lease_seconds
    now = now or _utc_now()
    cutoff = now - timedelta(seconds=lease)
    result = await session.execute(
        update(WebhookJob)
        .where(WebhookJob.status == STATUS_PROCESSING, WebhookJob.claimed_at < cutoff)
        .values(status=STATUS_PENDING, claimed_at=None, next_retry_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    recovered = int(result.rowcount or 0)
    if recovered:
        increment_counter("webhook_jobs_recovered_total", recovered)
        logger.warning("webhook_jobs_recovered count=%s lease_seconds=%s", recovered, lease)
    return recovered


async def _claim_job(session: AsyncSession, *, job_id: str) -> WebhookJob | None:
    # Single conditional update; a concurrent worker that already claimed the job leaves rowcount at 0.
    # The lease starts at the claim itself, not at the start of the sweep.
    now = _utc_now()
    result = await session.execute(
        update(WebhookJob)
        .where(WebhookJob.id == job_id, WebhookJob.status == STATUS_PENDING)
        .values(status=STATUS_PROCESSING, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount != 1:
        return None
    return await session.get(WebhookJob, job_id, populate_existing=True)


async def _post(client: httpx.AsyncClient, job: WebhookJob, body: bytes, timeout_s: float) -> httpx.Response:
    return await client.post(job.url, content=body, headers=_delivery_headers(job, body), timeout=timeout_s)


async def _deliver(job: WebhookJob, *, http_client: httpx.AsyncClient | None = None) -> int:
    # noop:// targets succeed locally without network I/O.
    if job.url.startswith("noop://"):
        return 200
    body = _serialize_payload(job.payload or {})
    timeout_s = max(0.2, get_settings().webhook_timeout_ms / 1000.0)
    start = time.monotonic()
    success = False
    try:
        if http_client is not None:
            response = await _post(http_client, job, body, timeout_s)
        else:
            async with httpx.AsyncClient() as client:
                response = await _post(client, job, body, timeout_s)
        success = 200 <= response.status_code < 300
    except httpx.TimeoutException as exc:
        raise DeliveryFailedError(f"delivery timed out after {timeout_s:.1f}s") from exc
    except httpx.HTTPError as exc:
        raise DeliveryFailedError(f"delivery failed: {exc.__class__.__name__}: {exc}") from exc
    finally:
        latency_ms = (time.monotonic() - start) * 1000.0
        record_external_call(integration="webhook.delivery", latency_ms=latency_ms, success=success)
    if not success:
        raise DeliveryFailedError(f"receiver responded with status {response.status_code}")
    return response.status_code


async def _record_failure(session: AsyncSession, *, job: WebhookJob, error: str, result: SweepResult) -> None:
    failed_at = _utc_now()
    errors = [*(job.errors_json or []), {"timestamp": failed_at.isoformat(), "message": error}]
    # Backoff uses the count before this failure: 1s, 2s, 4s, ... capped.
    delay = retry_delay(job.retry_count)
    job.retry_count += 1
    job.last_error = error
    job.errors_json = errors
    job.claimed_at = None
    if job.retry_count >= job.max_retries:
        job.status = STATUS_FAILED
        # Same transaction as the status change so a job dead-letters exactly once.
        session.add(
            DeadLetterEntry(
                original_job_id=job.id,
                webhook_type=job.webhook_type,
                event_type=job.event_type,
                url=job.url,
                payload=job.payload,
                retry_count=job.retry_count,
                errors_json=errors,
            )
        )
        result.dead_lettered += 1
        increment_counter("webhook_jobs_dead_lettered_total")
        logger.error(
            "webhook_job_dead_lettered job_id=%s event_type=%s retry_count=%s error=%s",
            job.id,
            job.event_type,
            job.retry_count,
            error,
        )
    else:
        job.status = STATUS_PENDING
        job.next_retry_at = failed_at + delay
        result.retried += 1
        increment_counter("webhook_jobs_retried_total")
        logger.warning(
            "webhook_job_retry_scheduled job_id=%s retry_count=%s delay_ms=%s error=%s",
            job.id,
            job.retry_count,
            int(delay.total_seconds() * 1000),
            error,
        )
    await session.commit()


async def process_pending_webhooks(
    session: AsyncSession,
    *,
    limit: int | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> SweepResult:
    """Run one bounded sweep of the delivery queue.

    Expired leases are recovered first, then up to ``limit`` due jobs are
    claimed oldest-due-first and delivered one at a time. Each state
    transition commits on its own so a crash mid-sweep loses at most the
    in-flight job's attempt, which the lease sweep later returns to pending.
    """
    settings = get_settings()
    limit = settings.webhook_batch_size if limit is None else limit
    result = SweepResult()
    result.recovered = await recover_stuck_webhook_jobs(session)

    now = _utc_now()
    due_ids = (
        await session.execute(
            select(WebhookJob.id)
            .where(WebhookJob.status == STATUS_PENDING, WebhookJob.next_retry_at <= now)
            .order_by(WebhookJob.next_retry_at.asc(), WebhookJob.created_at.asc())
            .limit(limit)
        )
    ).scalars().all()

    for job_id in due_ids:
        job = await _claim_job(session, job_id=job_id)
        if job is None:
            continue
        result.claimed += 1
        try:
            await _deliver(job, http_client=http_client)
        except DeliveryFailedError as exc:
            await _record_failure(session, job=job, error=str(exc), result=result)
            continue
        job.status = STATUS_COMPLETED
        job.completed_at = _utc_now()
        job.claimed_at = None
        job.last_error = None
        await session.commit()
        result.completed += 1
        increment_counter("webhook_jobs_completed_total")
        logger.info("webhook_job_completed job_id=%s event_type=%s", job.id, job.event_type)
    return result


async def replay_dead_letter(
    session: AsyncSession,
    *,
    dead_letter_id: str,
    max_retries: int | None = None,
) -> WebhookJob | None:
    """Re-enqueue a dead-lettered payload as a fresh job with a full budget.

    The dead-letter entry stays in place as the audit trail.
    """
    entry = await session.get(DeadLetterEntry, dead_letter_id)
    if entry is None:
        return None
    job = await enqueue_webhook(
        session,
        url=entry.url,
        payload=entry.payload,
        webhook_type=entry.webhook_type,
        event_type=entry.event_type,
        max_retries=max_retries,
        replayed_from_dead_letter_id=entry.id,
    )
    entry.replay_count = int(entry.replay_count or 0) + 1
    entry.last_replayed_at = _utc_now()
    await session.flush()
    increment_counter("webhook_dead_letters_replayed_total")
    logger.info("webhook_dead_letter_replayed dead_letter_id=%s job_id=%s", entry.id, job.id)
    return job


async def get_webhook_job(session: AsyncSession, job_id: str) -> WebhookJob | None:
    return await session.get(WebhookJob, job_id)


async def list_webhook_jobs(
    session: AsyncSession,
    *,
    status: str | None = None,
    limit: int = 50,
) -> list[WebhookJob]:
    stmt = select(WebhookJob).order_by(WebhookJob.created_at.desc()).limit(limit)
    if status:
        stmt = stmt.where(WebhookJob.status == status)
    return list((await session.execute(stmt)).scalars().all())


async def get_dead_letter(session: AsyncSession, dead_letter_id: str) -> DeadLetterEntry | None:
    return await session.get(DeadLetterEntry, dead_letter_id)


async def list_dead_letters(session: AsyncSession, *, limit: int = 50) -> list[DeadLetterEntry]:
    stmt = select(DeadLetterEntry).order_by(DeadLetterEntry.created_at.desc()).limit(limit)
    return list((await session.execute(stmt)).scalars().all())
