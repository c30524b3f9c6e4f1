"""
Task state tracker: the per-(region_key, source_type) lifecycle record.

State machine::

    pending -> processing -> completed
                          -> failed -> pending (retry) | dead_lettered
                          -> pending (rate-limit deferral)

Transitions are plain functions over any object carrying the state columns,
so the in-memory and SQLAlchemy trackers share one implementation of the
rules. Backoff after a failure is
``base * 2**min(consecutive_failures, max_exponent)`` where
``consecutive_failures`` is the count before the failure being recorded.

One row serves every profession on a key, so a completion or failure is
accepted on top of a sibling's terminal write; only a key that never started
rejects them.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.config import RetryPolicySettings
from app.consumer.errors import InvalidTransitionError, PersistenceError, TaskAlreadySettledError
from app.consumer.logging_utils import log_event
from app.domain.scrape_task import ScrapeTask
from db.base import as_utc, utc_now
from db.models.scrape_task_state import ScrapeTaskStatus
from db.repositories.task_state_repository import TaskStateRepository

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    ScrapeTaskStatus.PENDING: frozenset(
        {ScrapeTaskStatus.PENDING, ScrapeTaskStatus.PROCESSING, ScrapeTaskStatus.DEAD_LETTERED}
    ),
    # processing -> pending releases a task deferred by the rate limiter.
    ScrapeTaskStatus.PROCESSING: frozenset(
        {
            ScrapeTaskStatus.PENDING,
            ScrapeTaskStatus.PROCESSING,
            ScrapeTaskStatus.COMPLETED,
            ScrapeTaskStatus.FAILED,
            ScrapeTaskStatus.DEAD_LETTERED,
        }
    ),
    # A late completion after reconciliation forced a failure is still a completion.
    ScrapeTaskStatus.FAILED: frozenset(
        {
            ScrapeTaskStatus.PENDING,
            ScrapeTaskStatus.PROCESSING,
            ScrapeTaskStatus.COMPLETED,
            ScrapeTaskStatus.FAILED,
            ScrapeTaskStatus.DEAD_LETTERED,
        }
    ),
    # Siblings for other professions share the key, so a terminal write can
    # land on a key another task already finished.
    ScrapeTaskStatus.COMPLETED: frozenset(
        {
            ScrapeTaskStatus.PENDING,
            ScrapeTaskStatus.PROCESSING,
            ScrapeTaskStatus.COMPLETED,
            ScrapeTaskStatus.FAILED,
        }
    ),
    ScrapeTaskStatus.DEAD_LETTERED: frozenset(
        {ScrapeTaskStatus.PENDING, ScrapeTaskStatus.COMPLETED, ScrapeTaskStatus.FAILED}
    ),
}


@dataclass(frozen=True)
class TaskStateSnapshot:
    region_key: str
    source_type: str
    profession: str | None
    status: str
    priority: int
    total_attempts: int
    successful_scrapes: int
    failed_scrapes: int
    consecutive_failures: int
    last_error: str | None
    next_retry_at: datetime | None
    last_result_count: int
    total_records_found: int
    last_scrape_duration_ms: int | None
    queued_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    last_attempted_at: datetime | None

    def failure_age_hours(self, now: datetime) -> float | None:
        if self.status != ScrapeTaskStatus.FAILED or self.last_attempted_at is None:
            return None
        return round((now - self.last_attempted_at).total_seconds() / 3600.0, 2)


@dataclass
class TaskStateRecord:
    """
    In-memory mirror of the ``scrape_task_states`` columns.
    """

    region_key: str
    source_type: str
    profession: str | None = None
    status: str = ScrapeTaskStatus.PENDING
    priority: int = 5
    total_attempts: int = 0
    successful_scrapes: int = 0
    failed_scrapes: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
    next_retry_at: datetime | None = None
    last_result_count: int = 0
    total_records_found: int = 0
    last_scrape_duration_ms: int | None = None
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_attempted_at: datetime | None = None


_SNAPSHOT_FIELDS = tuple(item.name for item in fields(TaskStateSnapshot))


def snapshot_of(state: Any) -> TaskStateSnapshot:
    values = {}
    for name in _SNAPSHOT_FIELDS:
        value = getattr(state, name)
        values[name] = as_utc(value) if isinstance(value, datetime) else value
    return TaskStateSnapshot(**values)


def compute_backoff_seconds(consecutive_failures: int, policy: RetryPolicySettings) -> int:
    exponent = min(max(0, consecutive_failures), policy.backoff_max_exponent)
    return policy.backoff_base_seconds * (2**exponent)


def compute_next_retry_at(
    *,
    now: datetime,
    consecutive_failures: int,
    policy: RetryPolicySettings,
) -> datetime:
    return now + timedelta(seconds=compute_backoff_seconds(consecutive_failures, policy))


def _transition(state: Any, target: str) -> None:
    current = state.status or ScrapeTaskStatus.PENDING
    if target not in _ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(
            f"Cannot move {state.region_key}/{state.source_type} from {current} to {target}."
        )
    state.status = target


def _finish_transition(state: Any, target: str) -> None:
    if state.status == ScrapeTaskStatus.PENDING and state.started_at is not None:
        # A sibling for another profession released the shared key while
        # this task was still in flight.
        state.status = ScrapeTaskStatus.PROCESSING
    _transition(state, target)


def is_settled(state: Any, task: ScrapeTask) -> bool:
    """
    True when this delivery's work is already done (at-least-once redelivery).
    """

    if state.profession is not None and state.profession != task.profession:
        return False
    if state.status == ScrapeTaskStatus.DEAD_LETTERED:
        # Only deliveries scheduled before the final attempt; a requeued
        # entry carries a later schedule and starts over.
        last_attempted_at = as_utc(state.last_attempted_at)
        return last_attempted_at is not None and task.scheduled_at < last_attempted_at
    completed_at = as_utc(state.completed_at)
    return (
        state.status == ScrapeTaskStatus.COMPLETED
        and completed_at is not None
        and completed_at >= task.scheduled_at
    )


def apply_queued(state: Any, task: ScrapeTask, *, now: datetime) -> None:
    _transition(state, ScrapeTaskStatus.PENDING)
    state.profession = task.profession
    state.priority = task.priority
    state.queued_at = now


def apply_processing(state: Any, task: ScrapeTask, *, now: datetime) -> None:
    if is_settled(state, task):
        raise TaskAlreadySettledError(
            f"{task.region_key}/{task.source_type}/{task.profession} already {state.status}."
        )
    if state.status == ScrapeTaskStatus.DEAD_LETTERED:
        # Another profession on the same key starts a fresh lifecycle.
        _transition(state, ScrapeTaskStatus.PENDING)
    _transition(state, ScrapeTaskStatus.PROCESSING)
    state.profession = task.profession
    state.started_at = now


def apply_completed(
    state: Any,
    task: ScrapeTask,
    *,
    result_count: int,
    duration_ms: int,
    now: datetime,
) -> None:
    _finish_transition(state, ScrapeTaskStatus.COMPLETED)
    state.profession = task.profession
    state.successful_scrapes = (state.successful_scrapes or 0) + 1
    state.total_attempts = (state.total_attempts or 0) + 1
    state.consecutive_failures = 0
    state.next_retry_at = None
    state.last_result_count = result_count
    state.total_records_found = (state.total_records_found or 0) + result_count
    state.last_scrape_duration_ms = duration_ms
    state.completed_at = now
    state.last_attempted_at = now


def apply_failed(
    state: Any,
    task: ScrapeTask | None = None,
    *,
    error: str,
    duration_ms: int,
    now: datetime,
    policy: RetryPolicySettings,
) -> None:
    previous_failures = state.consecutive_failures or 0
    _finish_transition(state, ScrapeTaskStatus.FAILED)
    if task is not None:
        state.profession = task.profession
    state.failed_scrapes = (state.failed_scrapes or 0) + 1
    state.total_attempts = (state.total_attempts or 0) + 1
    state.consecutive_failures = previous_failures + 1
    state.last_error = error or "Unknown error"
    state.next_retry_at = compute_next_retry_at(
        now=now,
        consecutive_failures=previous_failures,
        policy=policy,
    )
    state.last_scrape_duration_ms = duration_ms
    state.last_attempted_at = now


def apply_requeue(state: Any, *, now: datetime) -> None:
    _transition(state, ScrapeTaskStatus.PENDING)
    state.queued_at = now


def apply_dead_lettered(state: Any, task: ScrapeTask, *, now: datetime) -> None:
    _transition(state, ScrapeTaskStatus.DEAD_LETTERED)
    state.profession = task.profession
    state.last_attempted_at = state.last_attempted_at or now


def is_stale_processing(state: Any, *, now: datetime, stale_after_seconds: int) -> bool:
    started_at = as_utc(state.started_at)
    return (
        state.status == ScrapeTaskStatus.PROCESSING
        and started_at is not None
        and now - started_at > timedelta(seconds=stale_after_seconds)
    )


def apply_reconciled(state: Any, *, now: datetime, policy: RetryPolicySettings) -> None:
    started_at = as_utc(state.started_at)
    elapsed_ms = int((now - started_at).total_seconds() * 1000) if started_at else 0
    apply_failed(
        state,
        error=(
            f"Processing timed out: no completion after {policy.stale_processing_seconds}s "
            "(worker presumed crashed)"
        ),
        duration_ms=elapsed_ms,
        now=now,
        policy=policy,
    )


class TaskStateTracker(ABC):
    """
    Owner of every task state transition.
    """

    def __init__(
        self,
        *,
        policy: RetryPolicySettings,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._policy = policy
        self._now = now_fn

    @property
    def policy(self) -> RetryPolicySettings:
        return self._policy

    @abstractmethod
    def _mutate(
        self,
        region_key: str,
        source_type: str,
        mutation: Callable[[Any, datetime], None],
    ) -> TaskStateSnapshot:
        """
        Apply one mutation as an atomic read-modify-write and return the result.
        """

    @abstractmethod
    def get(self, region_key: str, source_type: str) -> TaskStateSnapshot | None:
        """Current state of one key."""

    @abstractmethod
    def list_states(
        self,
        *,
        status: str | None = None,
        source_type: str | None = None,
        limit: int = 100,
    ) -> list[TaskStateSnapshot]:
        """Most recently updated states, optionally filtered."""

    @abstractmethod
    def reconcile_stale(self) -> list[TaskStateSnapshot]:
        """
        Force tasks stuck in processing past the stale ceiling to failed.
        """

    def mark_queued(self, task: ScrapeTask) -> TaskStateSnapshot:
        return self._mutate(
            task.region_key,
            task.source_type,
            lambda state, now: apply_queued(state, task, now=now),
        )

    def mark_processing(self, task: ScrapeTask) -> TaskStateSnapshot:
        return self._mutate(
            task.region_key,
            task.source_type,
            lambda state, now: apply_processing(state, task, now=now),
        )

    def mark_completed(
        self,
        task: ScrapeTask,
        *,
        result_count: int,
        duration_ms: int,
    ) -> TaskStateSnapshot:
        return self._mutate(
            task.region_key,
            task.source_type,
            lambda state, now: apply_completed(
                state, task, result_count=result_count, duration_ms=duration_ms, now=now
            ),
        )

    def mark_failed(self, task: ScrapeTask, *, error: str, duration_ms: int) -> TaskStateSnapshot:
        return self._mutate(
            task.region_key,
            task.source_type,
            lambda state, now: apply_failed(
                state, task, error=error, duration_ms=duration_ms, now=now, policy=self._policy
            ),
        )

    def requeue(self, task: ScrapeTask) -> TaskStateSnapshot:
        return self._mutate(
            task.region_key,
            task.source_type,
            lambda state, now: apply_requeue(state, now=now),
        )

    def mark_dead_lettered(self, task: ScrapeTask) -> TaskStateSnapshot:
        return self._mutate(
            task.region_key,
            task.source_type,
            lambda state, now: apply_dead_lettered(state, task, now=now),
        )

    def _log_reconciled(self, snapshot: TaskStateSnapshot) -> None:
        log_event(
            logger,
            logging.WARNING,
            "stale_task_reconciled",
            region_key=snapshot.region_key,
            source_type=snapshot.source_type,
            profession=snapshot.profession,
            consecutive_failures=snapshot.consecutive_failures,
            next_retry_at=snapshot.next_retry_at,
        )


class InMemoryTaskStateTracker(TaskStateTracker):
    """
    Single-process tracker guarded by one lock.
    """

    def __init__(
        self,
        *,
        policy: RetryPolicySettings,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(policy=policy, now_fn=now_fn)
        self._states: dict[tuple[str, str], TaskStateRecord] = {}
        self._lock = threading.Lock()

    def _mutate(
        self,
        region_key: str,
        source_type: str,
        mutation: Callable[[Any, datetime], None],
    ) -> TaskStateSnapshot:
        with self._lock:
            key = (region_key, source_type)
            current = self._states.get(key) or TaskStateRecord(
                region_key=region_key, source_type=source_type
            )
            # Mutate a copy so a rejected transition leaves the stored state untouched.
            working = TaskStateRecord(**vars(current))
            mutation(working, self._now())
            self._states[key] = working
            return snapshot_of(working)

    def get(self, region_key: str, source_type: str) -> TaskStateSnapshot | None:
        with self._lock:
            state = self._states.get((region_key, source_type))
            return snapshot_of(state) if state is not None else None

    def list_states(
        self,
        *,
        status: str | None = None,
        source_type: str | None = None,
        limit: int = 100,
    ) -> list[TaskStateSnapshot]:
        with self._lock:
            selected = [
                snapshot_of(state)
                for state in self._states.values()
                if (status is None or state.status == status)
                and (source_type is None or state.source_type == source_type)
            ]
        return selected[: max(1, limit)]

    def reconcile_stale(self) -> list[TaskStateSnapshot]:
        reconciled: list[TaskStateSnapshot] = []
        with self._lock:
            now = self._now()
            for state in self._states.values():
                if is_stale_processing(
                    state, now=now, stale_after_seconds=self._policy.stale_processing_seconds
                ):
                    apply_reconciled(state, now=now, policy=self._policy)
                    reconciled.append(snapshot_of(state))
        for snapshot in reconciled:
            self._log_reconciled(snapshot)
        return reconciled


class SQLAlchemyTaskStateTracker(TaskStateTracker):
    """
    Tracker backed by ``scrape_task_states`` with optimistic row versioning.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        policy: RetryPolicySettings,
        now_fn: Callable[[], datetime] = utc_now,
        max_conflict_retries: int = 5,
    ) -> None:
        super().__init__(policy=policy, now_fn=now_fn)
        self._session_factory = session_factory
        self._max_conflict_retries = max(1, max_conflict_retries)

    def _mutate(
        self,
        region_key: str,
        source_type: str,
        mutation: Callable[[Any, datetime], None],
    ) -> TaskStateSnapshot:
        last_error: Exception | None = None
        for _ in range(self._max_conflict_retries):
            try:
                with self._session_factory() as session, session.begin():
                    row = TaskStateRepository(session).get_or_create(
                        region_key=region_key,
                        source_type=source_type,
                    )
                    mutation(row, self._now())
                    snapshot = snapshot_of(row)
                return snapshot
            except (StaleDataError, IntegrityError) as exc:
                last_error = exc
        raise PersistenceError(
            f"Task state update for {region_key}/{source_type} kept conflicting: {last_error}"
        ) from last_error

    def get(self, region_key: str, source_type: str) -> TaskStateSnapshot | None:
        with self._session_factory() as session:
            row = TaskStateRepository(session).get(region_key=region_key, source_type=source_type)
            return snapshot_of(row) if row is not None else None

    def list_states(
        self,
        *,
        status: str | None = None,
        source_type: str | None = None,
        limit: int = 100,
    ) -> list[TaskStateSnapshot]:
        with self._session_factory() as session:
            rows = TaskStateRepository(session).list_states(
                status=status, source_type=source_type, limit=limit
            )
            return [snapshot_of(row) for row in rows]

    def queue_health(self) -> list[dict[str, Any]]:
        with self._session_factory() as session:
            return TaskStateRepository(session).queue_health()

    def reconcile_stale(self) -> list[TaskStateSnapshot]:
        now = self._now()
        cutoff = now - timedelta(seconds=self._policy.stale_processing_seconds)
        with self._session_factory() as session:
            candidates = [
                (row.region_key, row.source_type)
                for row in TaskStateRepository(session).list_stale_processing(started_before=cutoff)
            ]

        reconciled: list[TaskStateSnapshot] = []
        for region_key, source_type in candidates:
            try:
                snapshot = self._mutate(region_key, source_type, self._reconcile_if_stale)
            except PersistenceError as exc:
                log_event(
                    logger,
                    logging.ERROR,
                    "stale_task_reconcile_failed",
                    region_key=region_key,
                    source_type=source_type,
                    error=str(exc),
                )
                continue
            if snapshot.status == ScrapeTaskStatus.FAILED:
                reconciled.append(snapshot)
                self._log_reconciled(snapshot)
        return reconciled

    def _reconcile_if_stale(self, state: Any, now: datetime) -> None:
        # Re-checked under the row version: the task may have finished meanwhile.
        if is_stale_processing(
            state, now=now, stale_after_seconds=self._policy.stale_processing_seconds
        ):
            apply_reconciled(state, now=now, policy=self._policy)
