"""
Dead-letter sink: quarantine for tasks that exhausted their attempts, plus the
operator review workflow (list, resolve, requeue).
"""

from __future__ import annotations

import itertools
import logging
import threading
import traceback
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.consumer.errors import PersistenceError, TerminalError
from app.consumer.logging_utils import log_event, task_fields
from app.domain.scrape_task import QueueMessage, ScrapeTask
from db.base import as_utc, utc_now
from db.models.dead_letter_entry import DeadLetterEntry
from db.repositories.dead_letter_repository import DeadLetterRepository
from db.repositories.errors import DeadLetterNotFoundError

if TYPE_CHECKING:
    from app.consumer.queue import ScrapeQueue
    from app.consumer.task_state import TaskStateTracker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeadLetterRecord:
    id: int
    message_id: str
    message_body: dict[str, Any]
    region_key: str
    source_type: str
    profession: str | None
    error_message: str | None
    error_stack: str | None
    retry_count: int
    failed_at: datetime
    original_scheduled_at: datetime | None
    worker_version: str | None
    resolved: bool = False
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None

    def failure_age_hours(self, now: datetime) -> float:
        return round((now - self.failed_at).total_seconds() / 3600.0, 2)


def describe_error(error: BaseException | str | None) -> tuple[str, str | None]:
    """
    Message and formatted traceback for an entry; TerminalError reports its cause.
    """

    if error is None:
        return "Unknown error", None
    if isinstance(error, str):
        return error, None
    root: BaseException = error
    if isinstance(error, TerminalError) and error.cause is not None:
        root = error.cause
    stack = "".join(traceback.format_exception(type(root), root, root.__traceback__))
    return str(error) or type(error).__name__, stack


def _record_from_entry(entry: DeadLetterEntry) -> DeadLetterRecord:
    return DeadLetterRecord(
        id=entry.id,
        message_id=entry.message_id,
        message_body=dict(entry.message_body or {}),
        region_key=entry.region_key,
        source_type=entry.source_type,
        profession=entry.profession,
        error_message=entry.error_message,
        error_stack=entry.error_stack,
        retry_count=entry.retry_count,
        failed_at=as_utc(entry.failed_at),
        original_scheduled_at=as_utc(entry.original_scheduled_at),
        worker_version=entry.worker_version,
        resolved=bool(entry.resolved),
        resolved_at=as_utc(entry.resolved_at),
        resolved_by=entry.resolved_by,
        resolution_notes=entry.resolution_notes,
    )


class DeadLetterSink(ABC):
    """
    Exactly one entry per message id; entries are never deleted.
    """

    def __init__(
        self,
        *,
        worker_version: str,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._worker_version = worker_version
        self._now = now_fn

    @abstractmethod
    def quarantine(
        self,
        message: QueueMessage,
        error: BaseException | str | None,
        attempt_count: int,
    ) -> bool:
        """
        Write the entry for ``message`` unless one exists. Returns True if written.
        """

    @abstractmethod
    def list_unresolved(self, limit: int = 50) -> list[DeadLetterRecord]:
        """Unresolved entries, newest failure first."""

    @abstractmethod
    def count_unresolved(self) -> int:
        """Number of entries still awaiting review."""

    @abstractmethod
    def get(self, entry_id: int) -> DeadLetterRecord | None:
        """One entry by id."""

    @abstractmethod
    def resolve(
        self,
        entry_id: int,
        *,
        resolved_by: str,
        notes: str | None = None,
    ) -> DeadLetterRecord:
        """Mark an entry resolved. Raises DeadLetterNotFoundError for unknown ids."""

    def resurrect(
        self,
        entry_id: int,
        queue: ScrapeQueue,
        *,
        resolved_by: str = "operator",
        tracker: TaskStateTracker | None = None,
    ) -> QueueMessage:
        """
        Enqueue a fresh task from the entry's snapshot and resolve the entry.

        With a ``tracker`` the key is reset to pending before the message
        exists, so no poll can see the fresh task against a dead-lettered key.
        """

        record = self.get(entry_id)
        if record is None:
            raise DeadLetterNotFoundError(f"Dead-letter entry {entry_id} does not exist.")
        original = ScrapeTask.from_payload(record.message_body)
        task = replace(original, scheduled_at=self._now())
        if tracker is not None:
            tracker.mark_queued(task)
        message = queue.enqueue(task)
        self.resolve(
            entry_id,
            resolved_by=resolved_by,
            notes=f"Requeued as message {message.message_id}",
        )
        log_event(
            logger,
            logging.INFO,
            "dead_letter_requeued",
            entry_id=entry_id,
            original_message_id=record.message_id,
            new_message_id=message.message_id,
            **task_fields(task),
        )
        return message

    def _entry_values(
        self,
        message: QueueMessage,
        error: BaseException | str | None,
        attempt_count: int,
    ) -> dict[str, Any]:
        error_message, error_stack = describe_error(error)
        task = message.task
        return {
            "message_id": message.message_id,
            "message_body": task.to_payload(),
            "region_key": task.region_key,
            "source_type": task.source_type,
            "profession": task.profession,
            "error_message": error_message,
            "error_stack": error_stack,
            "retry_count": attempt_count,
            "failed_at": self._now(),
            "original_scheduled_at": task.scheduled_at,
            "worker_version": self._worker_version,
            "resolved": False,
        }

    def _log_quarantine(self, message: QueueMessage, *, written: bool, attempt_count: int) -> None:
        log_event(
            logger,
            logging.ERROR if written else logging.INFO,
            "task_dead_lettered" if written else "dead_letter_already_present",
            message_id=message.message_id,
            **task_fields(message.task, attempt=attempt_count),
        )


class InMemoryDeadLetterSink(DeadLetterSink):
    def __init__(
        self,
        *,
        worker_version: str,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(worker_version=worker_version, now_fn=now_fn)
        self._entries: dict[int, DeadLetterRecord] = {}
        self._by_message_id: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def quarantine(
        self,
        message: QueueMessage,
        error: BaseException | str | None,
        attempt_count: int,
    ) -> bool:
        with self._lock:
            written = message.message_id not in self._by_message_id
            if written:
                entry_id = next(self._ids)
                self._entries[entry_id] = DeadLetterRecord(
                    id=entry_id, **self._entry_values(message, error, attempt_count)
                )
                self._by_message_id[message.message_id] = entry_id
        self._log_quarantine(message, written=written, attempt_count=attempt_count)
        return written

    def list_unresolved(self, limit: int = 50) -> list[DeadLetterRecord]:
        with self._lock:
            entries = [entry for entry in self._entries.values() if not entry.resolved]
        entries.sort(key=lambda entry: (entry.failed_at, entry.id), reverse=True)
        return entries[: max(1, limit)]

    def count_unresolved(self) -> int:
        with self._lock:
            return sum(1 for entry in self._entries.values() if not entry.resolved)

    def get(self, entry_id: int) -> DeadLetterRecord | None:
        with self._lock:
            return self._entries.get(entry_id)

    def resolve(
        self,
        entry_id: int,
        *,
        resolved_by: str,
        notes: str | None = None,
    ) -> DeadLetterRecord:
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise DeadLetterNotFoundError(f"Dead-letter entry {entry_id} does not exist.")
            resolved = replace(
                entry,
                resolved=True,
                resolved_at=self._now(),
                resolved_by=resolved_by,
                resolution_notes=notes,
            )
            self._entries[entry_id] = resolved
            return resolved


class SQLAlchemyDeadLetterSink(DeadLetterSink):
    """
    Sink backed by ``dead_letter_entries``; the unique ``message_id`` makes
    quarantine idempotent across consumer processes.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        worker_version: str,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(worker_version=worker_version, now_fn=now_fn)
        self._session_factory = session_factory

    def quarantine(
        self,
        message: QueueMessage,
        error: BaseException | str | None,
        attempt_count: int,
    ) -> bool:
        try:
            with self._session_factory() as session, session.begin():
                written = DeadLetterRepository(session).insert_if_absent(
                    self._entry_values(message, error, attempt_count)
                )
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to dead-letter message {message.message_id}: {exc}"
            ) from exc
        self._log_quarantine(message, written=written, attempt_count=attempt_count)
        return written

    def list_unresolved(self, limit: int = 50) -> list[DeadLetterRecord]:
        with self._session_factory() as session:
            entries = DeadLetterRepository(session).list_entries(resolved=False, limit=limit)
            return [_record_from_entry(entry) for entry in entries]

    def count_unresolved(self) -> int:
        with self._session_factory() as session:
            return DeadLetterRepository(session).count_unresolved()

    def get(self, entry_id: int) -> DeadLetterRecord | None:
        with self._session_factory() as session:
            entry = DeadLetterRepository(session).get(entry_id)
            return _record_from_entry(entry) if entry is not None else None

    def resolve(
        self,
        entry_id: int,
        *,
        resolved_by: str,
        notes: str | None = None,
    ) -> DeadLetterRecord:
        with self._session_factory() as session, session.begin():
            repository = DeadLetterRepository(session)
            entry = repository.mark_resolved(
                repository.get_required(entry_id),
                resolved_by=resolved_by,
                notes=notes,
                now=self._now(),
            )
            session.flush()
            record = _record_from_entry(entry)
        log_event(
            logger,
            logging.INFO,
            "dead_letter_resolved",
            entry_id=entry_id,
            resolved_by=resolved_by,
        )
        return record
