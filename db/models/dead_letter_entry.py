"""
db/models/dead_letter_entry.py

Quarantined scrape tasks that exhausted their retry budget.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONPayload


class DeadLetterEntry(Base):
    """
    Immutable failure snapshot plus an operator resolution workflow.

    Rows are never deleted; ``message_id`` is unique so a redelivered message
    cannot be quarantined twice.
    """

    __tablename__ = "dead_letter_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    message_body: Mapped[dict[str, Any]] = mapped_column(
        JSONPayload,
        nullable=False,
        comment="Original ScrapeTask payload",
    )

    region_key: Mapped[str] = mapped_column(String(64), nullable=False)
    source_type: Mapped[str] = mapped_column(String(64), nullable=False)
    profession: Mapped[str | None] = mapped_column(String(120), nullable=True)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_stack: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    failed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    original_scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    worker_version: Mapped[str | None] = mapped_column(String(64), nullable=True)

    resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(120), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_dead_letter_entries_failed_at", "failed_at"),
        Index("ix_dead_letter_entries_source", "source_type", "region_key"),
        Index("ix_dead_letter_entries_resolved", "resolved"),
    )
