"""
db/models/scrape_queue_message.py

Database-backed queue substrate for scrape task deliveries.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base, JSONPayload


class ScrapeQueueMessage(Base):
    """
    One live message. ``visible_at`` gates delivery (delayed retry);
    ``leased_until`` hides a received message from other consumers until it is
    acked (row deleted) or retried. An expired lease makes the message
    deliverable again, which is what gives at-least-once delivery.
    """

    __tablename__ = "scrape_queue_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    queue_name: Mapped[str] = mapped_column(String(120), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONPayload, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    visible_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    leased_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    enqueued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_scrape_queue_messages_queue_visible", "queue_name", "visible_at"),
        Index("ix_scrape_queue_messages_priority", "priority"),
    )
