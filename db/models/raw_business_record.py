"""
db/models/raw_business_record.py

Scraped professional/business rows, unique per (source, source_record_id).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONPayload


class RawBusinessRecordStatus:
    NEW = "new"


class RawBusinessRecord(Base):
    __tablename__ = "raw_business_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    source_record_id: Mapped[str] = mapped_column(
        String(120),
        nullable=False,
        comment="License number or other source-assigned identifier",
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    state: Mapped[str] = mapped_column(String(8), nullable=False)
    postal_code: Mapped[str | None] = mapped_column(String(16), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    license_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    category: Mapped[str | None] = mapped_column(
        String(120),
        nullable=True,
        comment="Profession the record was scraped for",
    )
    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JSONPayload, nullable=True)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=RawBusinessRecordStatus.NEW,
    )
    scraped_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("source", "source_record_id", name="uq_raw_business_records_source_record"),
        Index("ix_raw_business_records_state", "state"),
        Index("ix_raw_business_records_postal_code", "postal_code"),
        Index("ix_raw_business_records_status", "status"),
    )
