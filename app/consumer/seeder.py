"""
Queue seeding for ZIP/state scrape tasks.

A key is skipped when it failed within the last 24 hours, completed within
the last 7 days, is already queued or processing, or is dead-lettered
(dead letters are requeued through the operator workflow). ``force``
bypasses every rule.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.consumer.errors import ConsumerError
from app.consumer.logging_utils import log_event, task_fields
from app.consumer.queue import ScrapeQueue
from app.consumer.task_state import TaskStateSnapshot, TaskStateTracker
from app.domain.scrape_task import ScrapeTask
from db.base import utc_now
from db.models.scrape_task_state import ScrapeTaskStatus

logger = logging.getLogger(__name__)

FAILED_REQUEUE_AFTER = timedelta(hours=24)
COMPLETED_REQUEUE_AFTER = timedelta(days=7)
DEFAULT_PROFESSION = "real_estate"

STATE_SOURCE_MAP: dict[str, str] = {
    "FL": "FL_DBPR",
    "TX": "TX_TREC",
    "CA": "CA_DRE",
    "WA": "WA_DOL",
}

SAMPLE_ZIP_CODES: dict[str, tuple[str, ...]] = {
    "FL": ("33101", "33109", "33139", "33140", "33141"),
    "TX": ("75001", "75201", "75202", "75203", "75204"),
    "CA": ("90210", "90211", "90212", "90401", "90402"),
    "WA": ("98070", "98101", "98102", "98103", "98104"),
}


@dataclass
class SeedSummary:
    queued: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: list[str] = field(default_factory=list)


def build_seed_tasks(
    *,
    zip_codes: Mapping[str, Sequence[str]],
    states: Iterable[str] | None = None,
    profession: str = DEFAULT_PROFESSION,
    priority: int = 5,
    source_map: Mapping[str, str] = STATE_SOURCE_MAP,
    now: datetime | None = None,
) -> list[ScrapeTask]:
    scheduled_at = now or utc_now()
    selected = [state.strip().upper() for state in states] if states else list(zip_codes)
    tasks: list[ScrapeTask] = []
    for state in selected:
        source_type = source_map.get(state)
        codes = zip_codes.get(state)
        if not source_type or not codes:
            logger.warning("No source type or ZIP codes configured for state %s", state)
            continue
        for zip_code in codes:
            tasks.append(
                ScrapeTask(
                    region_key=f"{zip_code}-{state}",
                    source_type=source_type,
                    profession=profession,
                    priority=priority,
                    scheduled_at=scheduled_at,
                )
            )
    return tasks


def should_skip(snapshot: TaskStateSnapshot | None, *, now: datetime) -> bool:
    if snapshot is None:
        return False
    status = snapshot.status
    if status == ScrapeTaskStatus.FAILED and snapshot.last_attempted_at is not None:
        return now - snapshot.last_attempted_at < FAILED_REQUEUE_AFTER
    if status == ScrapeTaskStatus.COMPLETED and snapshot.last_attempted_at is not None:
        return now - snapshot.last_attempted_at < COMPLETED_REQUEUE_AFTER
    if status == ScrapeTaskStatus.PENDING:
        return snapshot.queued_at is not None
    return status in {ScrapeTaskStatus.PROCESSING, ScrapeTaskStatus.DEAD_LETTERED}


class TaskSeeder:
    def __init__(
        self,
        *,
        queue: ScrapeQueue,
        tracker: TaskStateTracker,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._queue = queue
        self._tracker = tracker
        self._now = now_fn

    def seed(self, tasks: Iterable[ScrapeTask], *, force: bool = False) -> SeedSummary:
        summary = SeedSummary()
        for task in tasks:
            try:
                if not force and should_skip(
                    self._tracker.get(task.region_key, task.source_type),
                    now=self._now(),
                ):
                    summary.skipped += 1
                    log_event(logger, logging.DEBUG, "seed_task_skipped", **task_fields(task))
                    continue
                # A key is only marked queued once its message exists.
                self._queue.enqueue(task)
                self._tracker.mark_queued(task)
                summary.queued += 1
            except ConsumerError as exc:
                summary.errors += 1
                summary.error_messages.append(f"{task.region_key}/{task.source_type}: {exc}")
                log_event(
                    logger,
                    logging.ERROR,
                    "seed_task_failed",
                    error=str(exc),
                    **task_fields(task),
                )

        log_event(
            logger,
            logging.INFO,
            "queue_seeded",
            queued=summary.queued,
            skipped=summary.skipped,
            errors=summary.errors,
        )
        return summary
