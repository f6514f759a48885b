from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from botledger.core.errors import ValidationError
from botledger.domain.models import BotStatusEventRow


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BotStatusEvent:
    # One entry of an agent's status history; codes may repeat.
    code: str
    created_at: datetime
    sub_code: str | None = None


@dataclass(frozen=True)
class AgentWebhookEvent:
    # Inbound lifecycle notification reduced to what reconciliation needs.
    event: str
    bot_id: str
    session_id: str | None
    status: BotStatusEvent


def parse_timestamp(value: Any) -> datetime | None:
    """Parse agent timestamps into aware UTC datetimes.

    Accepts ISO-8601 strings (``Z`` suffix included), datetimes and epoch
    seconds. Returns None for anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)):
        try:
            parsed = datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_status_changes(raw_changes: Iterable[Any] | None) -> list[BotStatusEvent]:
    """Turn raw ``status_changes`` records into a timestamp-ordered event list.

    Entries without a code or a parseable ``created_at`` are dropped. Sorting
    is stable, so same-instant events keep their arrival order.
    """
    events: list[BotStatusEvent] = []
    dropped = 0
    for change in raw_changes or []:
        if not isinstance(change, dict):
            dropped += 1
            continue
        code = change.get("code")
        created_at = parse_timestamp(change.get("created_at"))
        if not code or created_at is None:
            dropped += 1
            continue
        sub_code = change.get("sub_code")
        events.append(BotStatusEvent(code=str(code), created_at=created_at, sub_code=sub_code or None))
    if dropped:
        logger.warning("bot_status_changes_dropped count=%s", dropped)
    return sorted(events, key=lambda event: event.created_at)


def events_from_rows(rows: Iterable[BotStatusEventRow]) -> list[BotStatusEvent]:
    events = [
        BotStatusEvent(code=row.status_code, created_at=row.created_at, sub_code=row.sub_code)
        for row in rows
    ]
    return sorted(events, key=lambda event: event.created_at)


def parse_agent_webhook(payload: dict[str, Any], *, received_at: datetime | None = None) -> AgentWebhookEvent | None:
    """Extract the bot status change from an inbound agent webhook.

    Returns None for non-bot events (calendar sync and the like). Raises
    ``ValidationError`` for bot events missing the bot id or a status code.
    """
    event_name = str(payload.get("event") or "")
    if not event_name.startswith("bot."):
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        raise ValidationError("webhook payload is missing data")
    bot = data.get("bot") if isinstance(data.get("bot"), dict) else {}
    status_data = data.get("data") if isinstance(data.get("data"), dict) else {}

    bot_id = bot.get("id")
    if not bot_id:
        raise ValidationError("webhook payload is missing the bot id")
    code = status_data.get("code") or event_name.removeprefix("bot.")
    if not code:
        raise ValidationError("webhook payload is missing a status code")
    created_at = parse_timestamp(status_data.get("updated_at")) or received_at or datetime.now(timezone.utc)
    metadata = bot.get("metadata") if isinstance(bot.get("metadata"), dict) else {}
    session_id = metadata.get("session_id")
    return AgentWebhookEvent(
        event=event_name,
        bot_id=str(bot_id),
        session_id=str(session_id) if session_id else None,
        status=BotStatusEvent(code=str(code), created_at=created_at, sub_code=status_data.get("sub_code") or None),
    )
