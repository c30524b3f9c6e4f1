"""
Persistence for scraped raw business records.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from db.models.raw_business_record import RawBusinessRecord, RawBusinessRecordStatus
from db.repositories.dialects import dialect_insert

_CONFLICT_COLUMNS = ("source", "source_record_id")
# Only these columns change when the same real-world entity is scraped again.
MUTABLE_COLUMNS = (
    "name",
    "city",
    "phone",
    "email",
    "license_status",
    "raw_data",
    "scraped_at",
)


class RawRecordRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def upsert(self, payload: dict[str, Any], *, now: datetime) -> None:
        """
        Insert one record or, on (source, source_record_id) conflict, overwrite
        its mutable fields and stamp ``last_updated``.
        """

        insert = dialect_insert(self._session)
        values = {**payload, "status": RawBusinessRecordStatus.NEW, "last_updated": now}
        stmt = insert(RawBusinessRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=list(_CONFLICT_COLUMNS),
            set_={
                **{column: getattr(stmt.excluded, column) for column in MUTABLE_COLUMNS},
                "last_updated": now,
            },
        )
        self._session.execute(stmt)

    def get(self, *, source: str, source_record_id: str) -> RawBusinessRecord | None:
        stmt = select(RawBusinessRecord).where(
            RawBusinessRecord.source == source,
            RawBusinessRecord.source_record_id == source_record_id,
        )
        return self._session.scalars(stmt).first()

    def count(self, *, source: str | None = None) -> int:
        stmt = select(func.count()).select_from(RawBusinessRecord)
        if source:
            stmt = stmt.where(RawBusinessRecord.source == source)
        return int(self._session.scalar(stmt) or 0)
