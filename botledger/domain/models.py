from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


# JSONB on Postgres; plain JSON keeps the schema portable to SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every dialect.

    SQLite drops tzinfo on storage, so values are normalized to UTC before
    binding and re-tagged as UTC when read back.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value
        if dialect.name == "sqlite":
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class MeetingSession(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String, index=True)
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    meeting_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Derived from the meeting URL host (zoom, google_meet, teams, unknown).
    meeting_platform: Mapped[str | None] = mapped_column(String, nullable=True)
    # At most one active agent generation is referenced at a time.
    bot_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    bot_status: Mapped[str | None] = mapped_column(String, nullable=True)
    recording_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    recording_ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    recording_duration_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Cumulative across every agent generation attached to this session.
    billable_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    billable_amount: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class BotStatusEventRow(Base):
    __tablename__ = "bot_status_events"
    __table_args__ = (
        # Duplicate inbound deliveries collapse onto one mirrored event.
        UniqueConstraint("bot_id", "status_code", "created_at", name="uq_bot_status_events_identity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bot_id: Mapped[str] = mapped_column(String, index=True)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status_code: Mapped[str] = mapped_column(String)
    sub_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class BotUsageRecord(Base):
    __tablename__ = "bot_usage_records"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    bot_id: Mapped[str] = mapped_column(String, unique=True)
    session_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String)
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True)
    recording_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    recording_ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    total_recording_seconds: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    billable_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # completed | failed | active
    status: Mapped[str] = mapped_column(String, default="active", index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class UsageLedgerEntry(Base):
    __tablename__ = "usage_ledger_entries"
    __table_args__ = (
        # One billing unit per session minute; reconciliation upserts on this key.
        UniqueConstraint("session_id", "minute_timestamp", name="uq_usage_ledger_session_minute"),
        Index("ix_usage_ledger_user_minute", "user_id", "minute_timestamp"),
        Index("ix_usage_ledger_org_minute", "organization_id", "minute_timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String)
    organization_id: Mapped[str | None] = mapped_column(String, nullable=True)
    session_id: Mapped[str] = mapped_column(String)
    bot_id: Mapped[str | None] = mapped_column(String, nullable=True)
    minute_timestamp: Mapped[datetime] = mapped_column(UTCDateTime)
    seconds_recorded: Mapped[int] = mapped_column(Integer)
    source: Mapped[str] = mapped_column(String, default="recording_agent")
    # "metadata" is reserved on declarative classes.
    metadata_json: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class WebhookJob(Base):
    __tablename__ = "webhook_jobs"
    __table_args__ = (
        # Sweeps scan pending jobs by due time.
        Index("ix_webhook_jobs_status_next_retry", "status", "next_retry_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    webhook_type: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String)
    url: Mapped[str] = mapped_column(Text)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType)
    # pending | processing | completed | failed
    status: Mapped[str] = mapped_column(String, default="pending")
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_retry_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now)
    # Lease start for the processing state; stale leases are swept back to pending.
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    errors_json: Mapped[list[dict[str, Any]]] = mapped_column("errors", JSONType, default=list)
    replayed_from_dead_letter_id: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )


class DeadLetterEntry(Base):
    __tablename__ = "webhook_dead_letters"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    # Unique so a failed job dead-letters exactly once.
    original_job_id: Mapped[str] = mapped_column(String, unique=True)
    webhook_type: Mapped[str] = mapped_column(String)
    event_type: Mapped[str] = mapped_column(String)
    url: Mapped[str] = mapped_column(Text)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    errors_json: Mapped[list[dict[str, Any]]] = mapped_column("errors", JSONType, default=list)
    replay_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_replayed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())


class PlanLimit(Base):
    __tablename__ = "plan_limits"

    # Keyed by organization id, or user id for users without an organization.
    owner_id: Mapped[str] = mapped_column(String, primary_key=True)
    monthly_minutes_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utc_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=_utc_now, server_default=func.now(), onupdate=_utc_now
    )
