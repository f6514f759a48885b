from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import hmac
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from botledger.core.config import get_settings
from botledger.core.errors import InvalidSignatureError
from botledger.domain.models import BotUsageRecord
from botledger.persistence.repos.sessions import set_bot_status
from botledger.persistence.repos.usage import get_usage_record, list_status_events, mirror_status_event
from botledger.services.telemetry import increment_counter
from botledger.services.usage.event_log import events_from_rows, parse_agent_webhook
from botledger.services.usage.reconciliation import StatusCodes, reconcile_bot


logger = logging.getLogger(__name__)

_SIGNATURE_PREFIX = "v1="


@dataclass(frozen=True)
class IngestResult:
    # outcome: ignored | duplicate | recorded | reconciled
    outcome: str
    bot_id: str | None = None
    code: str | None = None
    record: BotUsageRecord | None = None


def build_agent_signature(secret: str, timestamp: str, body: bytes) -> str:
    # Signed content is "{timestamp}.{raw body}".
    signed = timestamp.encode("utf-8") + b"." + body
    return _SIGNATURE_PREFIX + hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_agent_signature(
    *,
    secret: str | None,
    signature: str | None,
    timestamp: str | None,
    body: bytes,
    max_skew_s: int | None = None,
    now: datetime | None = None,
) -> None:
    """Check an inbound agent webhook signature; raise on mismatch.

    Verification is skipped when no secret is configured (local runs).
    """
    if not secret:
        return
    if not signature or not timestamp:
        raise InvalidSignatureError("missing webhook signature headers")
    max_skew_s = get_settings().agent_webhook_max_skew_s if max_skew_s is None else max_skew_s
    if max_skew_s > 0:
        try:
            signed_at = float(timestamp)
        except ValueError as exc:
            raise InvalidSignatureError("webhook timestamp is not epoch seconds") from exc
        current = (now or datetime.now(timezone.utc)).timestamp()
        if abs(current - signed_at) > max_skew_s:
            raise InvalidSignatureError("webhook timestamp outside the allowed window")
    expected = build_agent_signature(secret, timestamp, body)
    if not hmac.compare_digest(expected, signature.strip()):
        raise InvalidSignatureError("webhook signature mismatch")


async def ingest_agent_event(
    session: AsyncSession,
    *,
    payload: dict[str, Any],
    received_at: datetime | None = None,
    codes: StatusCodes | None = None,
) -> IngestResult:
    """Live path: mirror one agent status change and reconcile on markers.

    Reconciliation runs against the locally mirrored history, so the agent
    API is not called per webhook. Redelivered events are detected by the
    mirror's uniqueness and ignored.
    """
    codes = codes or StatusCodes.from_settings()
    event = parse_agent_webhook(payload, received_at=received_at)
    if event is None:
        increment_counter("agent_webhook_ignored_total")
        return IngestResult(outcome="ignored")

    session_id = event.session_id
    if session_id is None:
        record = await get_usage_record(session, event.bot_id)
        session_id = record.session_id if record is not None else None

    inserted = await mirror_status_event(
        session,
        bot_id=event.bot_id,
        session_id=session_id,
        status_code=event.status.code,
        sub_code=event.status.sub_code,
        created_at=event.status.created_at,
    )
    if not inserted:
        increment_counter("agent_webhook_duplicate_total")
        logger.info(
            "agent_webhook_duplicate bot_id=%s code=%s created_at=%s",
            event.bot_id,
            event.status.code,
            event.status.created_at.isoformat(),
        )
        return IngestResult(outcome="duplicate", bot_id=event.bot_id, code=event.status.code)

    await set_bot_status(session, bot_id=event.bot_id, bot_status=event.status.code)
    increment_counter("agent_webhook_received_total")
    if event.status.code not in codes.markers:
        return IngestResult(outcome="recorded", bot_id=event.bot_id, code=event.status.code)

    rows = await list_status_events(session, event.bot_id)
    record = await reconcile_bot(
        session,
        bot_id=event.bot_id,
        events=events_from_rows(rows),
        session_id=session_id,
        codes=codes,
    )
    return IngestResult(
        outcome="reconciled" if record is not None else "recorded",
        bot_id=event.bot_id,
        code=event.status.code,
        record=record,
    )
