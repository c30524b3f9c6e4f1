"""
Repository for per-(region_key, source_type) scrape task state.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import Select, case, func, select
from sqlalchemy.orm import Session

from db.models.scrape_task_state import ScrapeTaskState, ScrapeTaskStatus


class TaskStateRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, *, region_key: str, source_type: str) -> ScrapeTaskState | None:
        stmt: Select[tuple[ScrapeTaskState]] = select(ScrapeTaskState).where(
            ScrapeTaskState.region_key == region_key,
            ScrapeTaskState.source_type == source_type,
        )
        return self._session.scalars(stmt).first()

    def get_or_create(self, *, region_key: str, source_type: str) -> ScrapeTaskState:
        row = self.get(region_key=region_key, source_type=source_type)
        if row is not None:
            return row
        row = ScrapeTaskState(
            region_key=region_key,
            source_type=source_type,
            status=ScrapeTaskStatus.PENDING,
            priority=5,
            total_attempts=0,
            successful_scrapes=0,
            failed_scrapes=0,
            consecutive_failures=0,
            last_result_count=0,
            total_records_found=0,
        )
        self._session.add(row)
        return row

    def list_states(
        self,
        *,
        status: str | None = None,
        source_type: str | None = None,
        limit: int = 100,
    ) -> list[ScrapeTaskState]:
        stmt: Select[tuple[ScrapeTaskState]] = select(ScrapeTaskState)
        if status:
            stmt = stmt.where(ScrapeTaskState.status == status)
        if source_type:
            stmt = stmt.where(ScrapeTaskState.source_type == source_type)
        stmt = stmt.order_by(ScrapeTaskState.updated_at.desc(), ScrapeTaskState.id.desc()).limit(
            max(1, limit)
        )
        return list(self._session.scalars(stmt).all())

    def list_stale_processing(
        self,
        *,
        started_before: datetime,
        limit: int = 500,
    ) -> list[ScrapeTaskState]:
        stmt = (
            select(ScrapeTaskState)
            .where(
                ScrapeTaskState.status == ScrapeTaskStatus.PROCESSING,
                ScrapeTaskState.started_at < started_before,
            )
            .order_by(ScrapeTaskState.started_at)
            .limit(max(1, limit))
        )
        return list(self._session.scalars(stmt).all())

    def queue_health(self) -> list[dict[str, Any]]:
        """
        Status counts and result totals per source type.
        """

        def _count(status: str) -> Any:
            return func.sum(case((ScrapeTaskState.status == status, 1), else_=0))

        stmt = (
            select(
                ScrapeTaskState.source_type,
                func.count().label("total_keys"),
                _count(ScrapeTaskStatus.PENDING).label("pending"),
                _count(ScrapeTaskStatus.PROCESSING).label("processing"),
                _count(ScrapeTaskStatus.COMPLETED).label("completed"),
                _count(ScrapeTaskStatus.FAILED).label("failed"),
                _count(ScrapeTaskStatus.DEAD_LETTERED).label("dead_lettered"),
                func.sum(ScrapeTaskState.total_records_found).label("total_records_found"),
                func.avg(ScrapeTaskState.last_scrape_duration_ms).label("avg_scrape_duration_ms"),
            )
            .group_by(ScrapeTaskState.source_type)
            .order_by(ScrapeTaskState.source_type)
        )
        return [dict(row._mapping) for row in self._session.execute(stmt)]
