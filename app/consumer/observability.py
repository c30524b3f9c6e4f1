"""
Observability log: one processing record per delivery, read back by the
stats surface.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.consumer.errors import PersistenceError
from app.consumer.logging_utils import log_event
from db.base import as_utc, utc_now
from db.models.queue_message_log import QueueMessageLog, QueueMessageLogStatus
from db.repositories.processing_log_repository import ProcessingLogRepository

logger = logging.getLogger(__name__)

_HEALTH_STATUSES = (
    QueueMessageLogStatus.COMPLETED,
    QueueMessageLogStatus.FAILED,
    QueueMessageLogStatus.RETRIED,
    QueueMessageLogStatus.DEAD_LETTERED,
    QueueMessageLogStatus.DEFERRED,
    QueueMessageLogStatus.DUPLICATE,
)


@dataclass(frozen=True)
class ProcessingLogEntry:
    message_id: str
    queue_name: str
    region_key: str
    source_type: str
    profession: str | None
    status: str
    attempt_number: int
    received_at: datetime
    completed_at: datetime
    processing_duration_ms: int
    result_count: int = 0
    stored_count: int = 0
    provenance: str | None = None
    error_message: str | None = None
    worker_version: str | None = None


@dataclass(frozen=True)
class QueueHealth:
    source_type: str
    processed: int
    completed: int
    failed: int
    retried: int
    dead_lettered: int
    deferred: int
    duplicate: int
    records_found: int
    records_stored: int
    avg_duration_ms: float | None


def _health_from_row(row: dict[str, Any]) -> QueueHealth:
    average = row.get("avg_duration_ms")
    return QueueHealth(
        source_type=row["source_type"],
        processed=int(row.get("processed") or 0),
        completed=int(row.get("completed") or 0),
        failed=int(row.get("failed") or 0),
        retried=int(row.get("retried") or 0),
        dead_lettered=int(row.get("dead_lettered") or 0),
        deferred=int(row.get("deferred") or 0),
        duplicate=int(row.get("duplicate") or 0),
        records_found=int(row.get("records_found") or 0),
        records_stored=int(row.get("records_stored") or 0),
        avg_duration_ms=round(float(average), 2) if average is not None else None,
    )


def summarize_entries(entries: Iterable[ProcessingLogEntry]) -> list[QueueHealth]:
    grouped: dict[str, dict[str, Any]] = {}
    durations: dict[str, list[int]] = {}
    for entry in entries:
        row = grouped.setdefault(
            entry.source_type,
            {"source_type": entry.source_type, "processed": 0, "records_found": 0, "records_stored": 0}
            | {status: 0 for status in _HEALTH_STATUSES},
        )
        row["processed"] += 1
        if entry.status in _HEALTH_STATUSES:
            row[entry.status] += 1
        row["records_found"] += entry.result_count
        row["records_stored"] += entry.stored_count
        durations.setdefault(entry.source_type, []).append(entry.processing_duration_ms)

    summaries = []
    for source_type in sorted(grouped):
        samples = durations[source_type]
        grouped[source_type]["avg_duration_ms"] = sum(samples) / len(samples)
        summaries.append(_health_from_row(grouped[source_type]))
    return summaries


def _entry_from_row(row: QueueMessageLog) -> ProcessingLogEntry:
    return ProcessingLogEntry(
        message_id=row.message_id,
        queue_name=row.queue_name,
        region_key=row.region_key,
        source_type=row.source_type,
        profession=row.profession,
        status=row.status,
        attempt_number=row.attempt_number,
        received_at=as_utc(row.received_at),
        completed_at=as_utc(row.completed_at),
        processing_duration_ms=row.processing_duration_ms,
        result_count=row.result_count,
        stored_count=row.stored_count,
        provenance=row.provenance,
        error_message=row.error_message,
        worker_version=row.worker_version,
    )


class ProcessingLog(ABC):
    def __init__(self, *, now_fn: Callable[[], datetime] = utc_now) -> None:
        self._now = now_fn

    @abstractmethod
    def record(self, entry: ProcessingLogEntry) -> None:
        """Persist one processing record. Raises PersistenceError on failure."""

    @abstractmethod
    def recent_activity(self, limit: int = 100) -> list[ProcessingLogEntry]:
        """Latest records, newest first."""

    @abstractmethod
    def queue_health(self, *, window_hours: int = 24) -> list[QueueHealth]:
        """Per-source-type outcome summary over the trailing window."""

    def _log_recorded(self, entry: ProcessingLogEntry) -> None:
        log_event(
            logger,
            logging.DEBUG,
            "processing_recorded",
            message_id=entry.message_id,
            status=entry.status,
            region_key=entry.region_key,
            source_type=entry.source_type,
            attempt=entry.attempt_number,
            duration_ms=entry.processing_duration_ms,
        )


class InMemoryProcessingLog(ProcessingLog):
    def __init__(
        self,
        *,
        max_entries: int = 1000,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(now_fn=now_fn)
        self._entries: deque[ProcessingLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def record(self, entry: ProcessingLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)
        self._log_recorded(entry)

    def recent_activity(self, limit: int = 100) -> list[ProcessingLogEntry]:
        with self._lock:
            entries = list(self._entries)
        entries.sort(key=lambda entry: entry.received_at, reverse=True)
        return entries[: max(1, limit)]

    def queue_health(self, *, window_hours: int = 24) -> list[QueueHealth]:
        since = self._now() - timedelta(hours=window_hours)
        with self._lock:
            entries = [entry for entry in self._entries if entry.received_at >= since]
        return summarize_entries(entries)


class SQLAlchemyProcessingLog(ProcessingLog):
    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(now_fn=now_fn)
        self._session_factory = session_factory

    def record(self, entry: ProcessingLogEntry) -> None:
        try:
            with self._session_factory() as session, session.begin():
                ProcessingLogRepository(session).add(asdict(entry))
        except SQLAlchemyError as exc:
            raise PersistenceError(
                f"Failed to record processing of message {entry.message_id}: {exc}"
            ) from exc
        self._log_recorded(entry)

    def recent_activity(self, limit: int = 100) -> list[ProcessingLogEntry]:
        with self._session_factory() as session:
            rows = ProcessingLogRepository(session).recent(limit=limit)
            return [_entry_from_row(row) for row in rows]

    def queue_health(self, *, window_hours: int = 24) -> list[QueueHealth]:
        since = self._now() - timedelta(hours=window_hours)
        with self._session_factory() as session:
            rows = ProcessingLogRepository(session).health_since(since)
        return [_health_from_row(row) for row in rows]
