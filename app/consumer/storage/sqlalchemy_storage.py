"""
SQLAlchemy-backed result store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.consumer.errors import PersistenceError
from app.consumer.logging_utils import log_event, task_fields
from app.consumer.storage.base import ResultStore
from app.domain.scrape_task import RawRecord, ScrapeTask
from db.base import utc_now
from db.repositories.raw_record_repository import RawRecordRepository

logger = logging.getLogger(__name__)


class SQLAlchemyResultStore(ResultStore):
    """
    Upserts each record in its own transaction so one bad row cannot roll back
    the rest of the batch.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._now = now_fn

    def upsert(self, records: Sequence[RawRecord], task: ScrapeTask) -> int:
        if not records:
            return 0

        stored = 0
        last_error: Exception | None = None
        for record in records:
            try:
                with self._session_factory() as session, session.begin():
                    now = self._now()
                    RawRecordRepository(session).upsert(self._payload(record, now=now), now=now)
                stored += 1
            except SQLAlchemyError as exc:
                last_error = exc
                log_event(
                    logger,
                    logging.ERROR,
                    "record_store_failed",
                    source=record.source,
                    source_record_id=record.source_record_id,
                    error=str(exc),
                    **task_fields(task),
                )

        if stored == 0:
            raise PersistenceError(
                f"Failed to store any of {len(records)} records: {last_error}"
            ) from last_error

        log_event(
            logger,
            logging.INFO,
            "records_stored",
            stored=stored,
            received=len(records),
            **task_fields(task),
        )
        return stored

    @staticmethod
    def _payload(record: RawRecord, *, now: datetime) -> dict[str, object]:
        return {
            "source": record.source,
            "source_record_id": record.source_record_id,
            "name": record.name,
            "city": record.city,
            "state": record.state,
            "postal_code": record.postal_code,
            "phone": record.phone,
            "email": record.email,
            "license_status": record.license_status,
            "category": record.category,
            "raw_data": record.raw_data or None,
            "scraped_at": now,
        }
