"""
Persistence for per-delivery processing records.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from db.models.queue_message_log import QueueMessageLog, QueueMessageLogStatus


class ProcessingLogRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add(self, values: dict[str, Any]) -> QueueMessageLog:
        row = QueueMessageLog(**values)
        self._session.add(row)
        return row

    def recent(self, *, limit: int = 100) -> list[QueueMessageLog]:
        stmt = (
            select(QueueMessageLog)
            .order_by(QueueMessageLog.received_at.desc(), QueueMessageLog.id.desc())
            .limit(max(1, limit))
        )
        return list(self._session.scalars(stmt).all())

    def health_since(self, since: datetime) -> list[dict[str, Any]]:
        """
        Outcome counts, record totals and mean duration per source type.
        """

        def _count(status: str) -> Any:
            return func.sum(case((QueueMessageLog.status == status, 1), else_=0))

        stmt = (
            select(
                QueueMessageLog.source_type,
                func.count().label("processed"),
                _count(QueueMessageLogStatus.COMPLETED).label("completed"),
                _count(QueueMessageLogStatus.FAILED).label("failed"),
                _count(QueueMessageLogStatus.RETRIED).label("retried"),
                _count(QueueMessageLogStatus.DEAD_LETTERED).label("dead_lettered"),
                _count(QueueMessageLogStatus.DEFERRED).label("deferred"),
                _count(QueueMessageLogStatus.DUPLICATE).label("duplicate"),
                func.sum(QueueMessageLog.result_count).label("records_found"),
                func.sum(QueueMessageLog.stored_count).label("records_stored"),
                func.avg(QueueMessageLog.processing_duration_ms).label("avg_duration_ms"),
            )
            .where(QueueMessageLog.received_at >= since)
            .group_by(QueueMessageLog.source_type)
            .order_by(QueueMessageLog.source_type)
        )
        return [dict(row._mapping) for row in self._session.execute(stmt)]
