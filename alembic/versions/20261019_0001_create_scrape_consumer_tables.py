"""create scrape consumer tables

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # ---------------------------------------------------------------------------
    # rate_limits
    # One row per (source_type, source_key); version drives optimistic locking.
    # ---------------------------------------------------------------------------
    op.create_table(
        "rate_limits",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source_type", sa.String(length=64), nullable=False),
        sa.Column("source_key", sa.String(length=64), nullable=False),
        sa.Column("requests_per_second", sa.Float(), nullable=False),
        sa.Column("is_throttled", sa.Boolean(), nullable=False),
        sa.Column("throttled_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("second_count", sa.Integer(), nullable=False),
        sa.Column("second_window_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("minute_count", sa.Integer(), nullable=False),
        sa.Column("minute_window_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hour_count", sa.Integer(), nullable=False),
        sa.Column("hour_window_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("day_count", sa.Integer(), nullable=False),
        sa.Column("day_window_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_request_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_request_duration_ms", sa.Integer(), nullable=True),
        sa.Column("average_request_duration_ms", sa.Float(), nullable=True),
        sa.Column("total_requests", sa.Integer(), nullable=False),
        sa.Column("total_throttled", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("source_type", "source_key", name="uq_rate_limits_source"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_rate_limits_is_throttled", "rate_limits", ["is_throttled"])
    op.create_index("ix_rate_limits_updated_at", "rate_limits", ["updated_at"])

    # ---------------------------------------------------------------------------
    # scrape_task_states
    # Lifecycle per (region_key, source_type).
    # ---------------------------------------------------------------------------
    op.create_table(
        "scrape_task_states",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("region_key", sa.String(length=64), nullable=False),
        sa.Column("source_type", sa.String(length=64), nullable=False),
        sa.Column("profession", sa.String(length=120), nullable=True),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            comment="pending, processing, completed, failed, dead_lettered",
        ),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("total_attempts", sa.Integer(), nullable=False),
        sa.Column("successful_scrapes", sa.Integer(), nullable=False),
        sa.Column("failed_scrapes", sa.Integer(), nullable=False),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_result_count", sa.Integer(), nullable=False),
        sa.Column("total_records_found", sa.Integer(), nullable=False),
        sa.Column("last_scrape_duration_ms", sa.Integer(), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("region_key", "source_type", name="uq_scrape_task_states_key"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_scrape_task_states_status", "scrape_task_states", ["status"])
    op.create_index("ix_scrape_task_states_next_retry_at", "scrape_task_states", ["next_retry_at"])
    op.create_index(
        "ix_scrape_task_states_status_started_at",
        "scrape_task_states",
        ["status", "started_at"],
    )

    # ---------------------------------------------------------------------------
    # raw_business_records
    # Idempotent upsert target keyed by (source, source_record_id).
    # ---------------------------------------------------------------------------
    op.create_table(
        "raw_business_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.Column(
            "source_record_id",
            sa.String(length=120),
            nullable=False,
            comment="License number or other source-assigned identifier",
        ),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("city", sa.String(length=120), nullable=True),
        sa.Column("state", sa.String(length=8), nullable=False),
        sa.Column("postal_code", sa.String(length=16), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("license_status", sa.String(length=64), nullable=True),
        sa.Column(
            "category",
            sa.String(length=120),
            nullable=True,
            comment="Profession the record was scraped for",
        ),
        sa.Column("raw_data", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("scraped_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint(
            "source",
            "source_record_id",
            name="uq_raw_business_records_source_record",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_raw_business_records_state", "raw_business_records", ["state"])
    op.create_index("ix_raw_business_records_postal_code", "raw_business_records", ["postal_code"])
    op.create_index("ix_raw_business_records_status", "raw_business_records", ["status"])

    # ---------------------------------------------------------------------------
    # dead_letter_entries
    # Never deleted; unique message_id makes quarantine idempotent.
    # ---------------------------------------------------------------------------
    op.create_table(
        "dead_letter_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.String(length=128), nullable=False),
        sa.Column(
            "message_body",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            comment="Original ScrapeTask payload",
        ),
        sa.Column("region_key", sa.String(length=64), nullable=False),
        sa.Column("source_type", sa.String(length=64), nullable=False),
        sa.Column("profession", sa.String(length=120), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_stack", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column(
            "failed_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("original_scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_version", sa.String(length=64), nullable=True),
        sa.Column("resolved", sa.Boolean(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=120), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.UniqueConstraint("message_id", name="uq_dead_letter_entries_message_id"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dead_letter_entries_failed_at", "dead_letter_entries", ["failed_at"])
    op.create_index(
        "ix_dead_letter_entries_source",
        "dead_letter_entries",
        ["source_type", "region_key"],
    )
    op.create_index("ix_dead_letter_entries_resolved", "dead_letter_entries", ["resolved"])

    # ---------------------------------------------------------------------------
    # queue_message_logs
    # One row per processed delivery.
    # ---------------------------------------------------------------------------
    op.create_table(
        "queue_message_logs",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.String(length=128), nullable=False),
        sa.Column("queue_name", sa.String(length=120), nullable=False),
        sa.Column("region_key", sa.String(length=64), nullable=False),
        sa.Column("source_type", sa.String(length=64), nullable=False),
        sa.Column("profession", sa.String(length=120), nullable=True),
        sa.Column(
            "status",
            sa.String(length=32),
            nullable=False,
            comment="completed, failed, retried, dead_lettered, deferred, duplicate",
        ),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processing_duration_ms", sa.Integer(), nullable=False),
        sa.Column("result_count", sa.Integer(), nullable=False),
        sa.Column("stored_count", sa.Integer(), nullable=False),
        sa.Column("provenance", sa.String(length=16), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("worker_version", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_queue_message_logs_received_at", "queue_message_logs", ["received_at"])
    op.create_index("ix_queue_message_logs_message_id", "queue_message_logs", ["message_id"])
    op.create_index("ix_queue_message_logs_key", "queue_message_logs", ["source_type", "region_key"])
    op.create_index("ix_queue_message_logs_status", "queue_message_logs", ["status"])

    # ---------------------------------------------------------------------------
    # scrape_queue_messages
    # Live queue; rows are deleted on ack.
    # ---------------------------------------------------------------------------
    op.create_table(
        "scrape_queue_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("message_id", sa.String(length=128), nullable=False),
        sa.Column("queue_name", sa.String(length=120), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("visible_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("leased_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "enqueued_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint("message_id", name="uq_scrape_queue_messages_message_id"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_scrape_queue_messages_queue_visible",
        "scrape_queue_messages",
        ["queue_name", "visible_at"],
    )
    op.create_index("ix_scrape_queue_messages_priority", "scrape_queue_messages", ["priority"])


def downgrade() -> None:
    op.drop_index("ix_scrape_queue_messages_priority", table_name="scrape_queue_messages")
    op.drop_index("ix_scrape_queue_messages_queue_visible", table_name="scrape_queue_messages")
    op.drop_table("scrape_queue_messages")

    op.drop_index("ix_queue_message_logs_status", table_name="queue_message_logs")
    op.drop_index("ix_queue_message_logs_key", table_name="queue_message_logs")
    op.drop_index("ix_queue_message_logs_message_id", table_name="queue_message_logs")
    op.drop_index("ix_queue_message_logs_received_at", table_name="queue_message_logs")
    op.drop_table("queue_message_logs")

    op.drop_index("ix_dead_letter_entries_resolved", table_name="dead_letter_entries")
    op.drop_index("ix_dead_letter_entries_source", table_name="dead_letter_entries")
    op.drop_index("ix_dead_letter_entries_failed_at", table_name="dead_letter_entries")
    op.drop_table("dead_letter_entries")

    op.drop_index("ix_raw_business_records_status", table_name="raw_business_records")
    op.drop_index("ix_raw_business_records_postal_code", table_name="raw_business_records")
    op.drop_index("ix_raw_business_records_state", table_name="raw_business_records")
    op.drop_table("raw_business_records")

    op.drop_index("ix_scrape_task_states_status_started_at", table_name="scrape_task_states")
    op.drop_index("ix_scrape_task_states_next_retry_at", table_name="scrape_task_states")
    op.drop_index("ix_scrape_task_states_status", table_name="scrape_task_states")
    op.drop_table("scrape_task_states")

    op.drop_index("ix_rate_limits_updated_at", table_name="rate_limits")
    op.drop_index("ix_rate_limits_is_throttled", table_name="rate_limits")
    op.drop_table("rate_limits")
