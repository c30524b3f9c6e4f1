"""
Persistence for the database-backed scrape queue.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from db.models.scrape_queue_message import ScrapeQueueMessage


class QueueMessageRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, values: dict[str, Any]) -> ScrapeQueueMessage:
        row = ScrapeQueueMessage(**values)
        self._session.add(row)
        return row

    def lease_visible(
        self,
        *,
        queue_name: str,
        now: datetime,
        leased_until: datetime,
        limit: int,
    ) -> list[ScrapeQueueMessage]:
        """
        Claim up to ``limit`` deliverable messages and bump their attempt counter.

        Rows locked by another consumer are skipped on PostgreSQL; SQLite
        serializes writers, so the lock clause is simply not rendered there.
        """

        stmt = (
            select(ScrapeQueueMessage)
            .where(
                ScrapeQueueMessage.queue_name == queue_name,
                ScrapeQueueMessage.visible_at <= now,
                or_(
                    ScrapeQueueMessage.leased_until.is_(None),
                    ScrapeQueueMessage.leased_until <= now,
                ),
            )
            .order_by(
                ScrapeQueueMessage.priority,
                ScrapeQueueMessage.visible_at,
                ScrapeQueueMessage.id,
            )
            .limit(max(1, limit))
            .with_for_update(skip_locked=True)
        )
        rows = list(self._session.scalars(stmt).all())
        for row in rows:
            row.attempts = (row.attempts or 0) + 1
            row.leased_until = leased_until
        return rows

    def delete(self, *, queue_name: str, message_id: str) -> bool:
        stmt = delete(ScrapeQueueMessage).where(
            ScrapeQueueMessage.queue_name == queue_name,
            ScrapeQueueMessage.message_id == message_id,
        )
        return bool(self._session.execute(stmt).rowcount)

    def reschedule(
        self,
        *,
        queue_name: str,
        message_id: str,
        visible_at: datetime,
        refund_attempt: bool = False,
    ) -> bool:
        values: dict[str, Any] = {"visible_at": visible_at, "leased_until": None}
        if refund_attempt:
            values["attempts"] = ScrapeQueueMessage.attempts - 1
        stmt = (
            update(ScrapeQueueMessage)
            .where(
                ScrapeQueueMessage.queue_name == queue_name,
                ScrapeQueueMessage.message_id == message_id,
            )
            .values(**values)
        )
        return bool(self._session.execute(stmt).rowcount)

    def count(self, *, queue_name: str) -> int:
        stmt = select(func.count()).select_from(ScrapeQueueMessage).where(
            ScrapeQueueMessage.queue_name == queue_name
        )
        return int(self._session.scalar(stmt) or 0)
