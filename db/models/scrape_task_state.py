"""
db/models/scrape_task_state.py

Queue-state record per (region_key, source_type).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin


class ScrapeTaskStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


class ScrapeTaskState(Base, TimestampMixin):
    __tablename__ = "scrape_task_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    region_key: Mapped[str] = mapped_column(String(64), nullable=False)
    source_type: Mapped[str] = mapped_column(String(64), nullable=False)
    profession: Mapped[str | None] = mapped_column(String(120), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ScrapeTaskStatus.PENDING,
        comment="pending, processing, completed, failed, dead_lettered",
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)

    total_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_scrapes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_scrapes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_result_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_records_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_scrape_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    queued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("region_key", "source_type", name="uq_scrape_task_states_key"),
        Index("ix_scrape_task_states_status", "status"),
        Index("ix_scrape_task_states_next_retry_at", "next_retry_at"),
        Index("ix_scrape_task_states_status_started_at", "status", "started_at"),
    )
