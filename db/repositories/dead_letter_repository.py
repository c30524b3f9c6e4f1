"""
Persistence for quarantined scrape tasks.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from db.models.dead_letter_entry import DeadLetterEntry
from db.repositories.dialects import dialect_insert
from db.repositories.errors import DeadLetterNotFoundError


class DeadLetterRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def insert_if_absent(self, values: dict[str, Any]) -> bool:
        """
        Insert one entry unless its ``message_id`` is already quarantined.

        Returns True when a row was written.
        """

        insert = dialect_insert(self._session)
        stmt = insert(DeadLetterEntry).values(**values).on_conflict_do_nothing(
            index_elements=["message_id"]
        )
        result = self._session.execute(stmt)
        return bool(result.rowcount)

    def get(self, entry_id: int) -> DeadLetterEntry | None:
        return self._session.get(DeadLetterEntry, entry_id)

    def get_required(self, entry_id: int) -> DeadLetterEntry:
        entry = self.get(entry_id)
        if entry is None:
            raise DeadLetterNotFoundError(f"Dead-letter entry {entry_id} does not exist.")
        return entry

    def get_by_message_id(self, message_id: str) -> DeadLetterEntry | None:
        stmt = select(DeadLetterEntry).where(DeadLetterEntry.message_id == message_id)
        return self._session.scalars(stmt).first()

    def list_entries(self, *, resolved: bool | None = False, limit: int = 50) -> list[DeadLetterEntry]:
        stmt = select(DeadLetterEntry)
        if resolved is not None:
            stmt = stmt.where(DeadLetterEntry.resolved.is_(resolved))
        stmt = stmt.order_by(DeadLetterEntry.failed_at.desc(), DeadLetterEntry.id.desc()).limit(
            max(1, limit)
        )
        return list(self._session.scalars(stmt).all())

    def count_unresolved(self) -> int:
        stmt = select(func.count()).select_from(DeadLetterEntry).where(
            DeadLetterEntry.resolved.is_(False)
        )
        return int(self._session.scalar(stmt) or 0)

    def mark_resolved(
        self,
        entry: DeadLetterEntry,
        *,
        resolved_by: str,
        notes: str | None,
        now: datetime,
    ) -> DeadLetterEntry:
        entry.resolved = True
        entry.resolved_at = now
        entry.resolved_by = resolved_by
        entry.resolution_notes = notes
        return entry
