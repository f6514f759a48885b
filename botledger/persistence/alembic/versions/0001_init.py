"""init

Revision ID: 0001_init
Revises: 
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(), primary_key=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("meeting_url", sa.Text(), nullable=True),
        sa.Column("meeting_platform", sa.String(), nullable=True),
        sa.Column("bot_id", sa.String(), nullable=True),
        sa.Column("bot_status", sa.String(), nullable=True),
        sa.Column("recording_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recording_ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recording_duration_seconds", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("billable_minutes", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("billable_amount", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_sessions_user_id", "sessions", ["user_id"])
    op.create_index("ix_sessions_organization_id", "sessions", ["organization_id"])
    op.create_index("ix_sessions_bot_id", "sessions", ["bot_id"])

    # Local mirror of inbound agent status changes for the live reconciliation path.
    op.create_table(
        "bot_status_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("bot_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("status_code", sa.String(), nullable=False),
        sa.Column("sub_code", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("bot_id", "status_code", "created_at", name="uq_bot_status_events_identity"),
    )
    op.create_index("ix_bot_status_events_bot_id", "bot_status_events", ["bot_id"])

    op.create_table(
        "bot_usage_records",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("bot_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("recording_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recording_ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_recording_seconds", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("billable_minutes", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("status", sa.String(), server_default="active", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("bot_id", name="uq_bot_usage_records_bot_id"),
    )
    op.create_index("ix_bot_usage_records_session_id", "bot_usage_records", ["session_id"])
    op.create_index("ix_bot_usage_records_status", "bot_usage_records", ["status"])

    # One row per billed minute; the unique key makes reconciliation an upsert.
    op.create_table(
        "usage_ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("bot_id", sa.String(), nullable=True),
        sa.Column("minute_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("seconds_recorded", sa.Integer(), nullable=False),
        sa.Column("source", sa.String(), server_default="recording_agent", nullable=False),
        sa.Column("metadata", _JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("session_id", "minute_timestamp", name="uq_usage_ledger_session_minute"),
    )
    op.create_index("ix_usage_ledger_user_minute", "usage_ledger_entries", ["user_id", "minute_timestamp"])
    op.create_index("ix_usage_ledger_org_minute", "usage_ledger_entries", ["organization_id", "minute_timestamp"])

    op.create_table(
        "webhook_jobs",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("webhook_type", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("max_retries", sa.Integer(), server_default=sa.text("3"), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("errors", _JSON, nullable=True),
        sa.Column("replayed_from_dead_letter_id", sa.String(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_jobs_status_next_retry", "webhook_jobs", ["status", "next_retry_at"])

    op.create_table(
        "webhook_dead_letters",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("original_job_id", sa.String(), nullable=False),
        sa.Column("webhook_type", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("errors", _JSON, nullable=True),
        sa.Column("replay_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_replayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("original_job_id", name="uq_webhook_dead_letters_original_job_id"),
    )

    # Monthly recording minute limits keyed by organization, or user when solo.
    op.create_table(
        "plan_limits",
        sa.Column("owner_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("monthly_minutes_limit", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("plan_limits")
    op.drop_table("webhook_dead_letters")
    op.drop_index("ix_webhook_jobs_status_next_retry", table_name="webhook_jobs")
    op.drop_table("webhook_jobs")
    op.drop_index("ix_usage_ledger_org_minute", table_name="usage_ledger_entries")
    op.drop_index("ix_usage_ledger_user_minute", table_name="usage_ledger_entries")
    op.drop_table("usage_ledger_entries")
    op.drop_index("ix_bot_usage_records_status", table_name="bot_usage_records")
    op.drop_index("ix_bot_usage_records_session_id", table_name="bot_usage_records")
    op.drop_table("bot_usage_records")
    op.drop_index("ix_bot_status_events_bot_id", table_name="bot_status_events")
    op.drop_table("bot_status_events")
    op.drop_index("ix_sessions_bot_id", table_name="sessions")
    op.drop_index("ix_sessions_organization_id", table_name="sessions")
    op.drop_index("ix_sessions_user_id", table_name="sessions")
    op.drop_table("sessions")
