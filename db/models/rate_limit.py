"""
db/models/rate_limit.py

Per-(source_type, source_key) pacing configuration and request counters.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, TimestampMixin

DEFAULT_REQUESTS_PER_SECOND = 1.0


class RateLimit(Base, TimestampMixin):
    """
    One row per rate-limited key.

    ``source_key`` is the region key half of the composite key. Counters are
    fixed windows: each ``*_count`` is only meaningful while its
    ``*_window_started_at`` is within the window length. ``version`` guards
    every read-modify-write so concurrent consumers never both reserve the
    same pacing slot.
    """

    __tablename__ = "rate_limits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_type: Mapped[str] = mapped_column(String(64), nullable=False)
    source_key: Mapped[str] = mapped_column(String(64), nullable=False)

    requests_per_second: Mapped[float] = mapped_column(
        Float,
        nullable=False,
        default=DEFAULT_REQUESTS_PER_SECOND,
    )
    is_throttled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    throttled_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    second_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    second_window_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    minute_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minute_window_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    hour_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hour_window_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    day_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    day_window_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    last_request_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_request_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    average_request_duration_ms: Mapped[float | None] = mapped_column(Float, nullable=True)
    total_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_throttled: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        UniqueConstraint("source_type", "source_key", name="uq_rate_limits_source"),
        Index("ix_rate_limits_is_throttled", "is_throttled"),
        Index("ix_rate_limits_updated_at", "updated_at"),
    )
