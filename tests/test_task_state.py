"""
tests/test_task_state.py

Lifecycle transitions, backoff schedule and stale-task reconciliation for
both task state trackers.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from app.config import RetryPolicySettings
from app.consumer.errors import InvalidTransitionError, TaskAlreadySettledError
from app.consumer.task_state import (
    InMemoryTaskStateTracker,
    SQLAlchemyTaskStateTracker,
    apply_failed,
    compute_backoff_seconds,
)
from app.domain.scrape_task import ScrapeTask
from db.models.scrape_task_state import ScrapeTaskStatus

POLICY = RetryPolicySettings()


def _task(clock, **overrides) -> ScrapeTask:
    task = ScrapeTask(
        region_key="33101-FL",
        source_type="FL_DBPR",
        profession="plumber",
        scheduled_at=clock(),
    )
    return replace(task, **overrides)


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


def test_backoff_doubles_then_caps() -> None:
    delays = [compute_backoff_seconds(failures, POLICY) for failures in range(9)]
    assert delays[:6] == [3600, 7200, 14400, 28800, 57600, 115200]
    assert delays[6:] == [115200, 115200, 115200]
    assert delays == sorted(delays)


def test_backoff_respects_custom_policy() -> None:
    policy = RetryPolicySettings(backoff_base_seconds=10, backoff_max_exponent=2)
    assert [compute_backoff_seconds(n, policy) for n in range(4)] == [10, 20, 40, 40]


# ---------------------------------------------------------------------------
# Tracker behavior shared by both backends
# ---------------------------------------------------------------------------


@pytest.fixture(params=["memory", "sql"])
def tracker(request, clock):
    if request.param == "memory":
        return InMemoryTaskStateTracker(policy=POLICY, now_fn=clock)
    session_factory = request.getfixturevalue("session_factory")
    return SQLAlchemyTaskStateTracker(session_factory=session_factory, policy=POLICY, now_fn=clock)


class TestTrackerLifecycle:
    def test_successful_scrape_with_no_results_completes(self, tracker, clock) -> None:
        task = _task(clock)
        queued = tracker.mark_queued(task)
        assert queued.status == ScrapeTaskStatus.PENDING
        assert queued.queued_at == clock()

        processing = tracker.mark_processing(task)
        assert processing.status == ScrapeTaskStatus.PROCESSING
        assert processing.started_at == clock()

        clock.advance(seconds=2)
        completed = tracker.mark_completed(task, result_count=0, duration_ms=1800)
        assert completed.status == ScrapeTaskStatus.COMPLETED
        assert completed.successful_scrapes == 1
        assert completed.total_attempts == 1
        assert completed.last_result_count == 0
        assert completed.consecutive_failures == 0
        assert completed.next_retry_at is None
        assert completed.completed_at == clock()

    def test_failures_schedule_exponential_retries(self, tracker, clock) -> None:
        task = _task(clock)
        tracker.mark_processing(task)
        first = tracker.mark_failed(task, error="Scraper timed out", duration_ms=30000)
        assert first.status == ScrapeTaskStatus.FAILED
        assert first.consecutive_failures == 1
        assert first.failed_scrapes == 1
        assert first.next_retry_at == clock() + timedelta(seconds=3600)
        assert first.last_error == "Scraper timed out"

        tracker.requeue(task)
        tracker.mark_processing(task)
        second = tracker.mark_failed(task, error="Scraper timed out", duration_ms=30000)
        assert second.consecutive_failures == 2
        assert second.next_retry_at == clock() + timedelta(seconds=7200)

    def test_success_resets_consecutive_failures(self, tracker, clock) -> None:
        task = _task(clock)
        tracker.mark_processing(task)
        tracker.mark_failed(task, error="boom", duration_ms=10)
        tracker.mark_processing(task)
        completed = tracker.mark_completed(task, result_count=4, duration_ms=20)
        assert completed.consecutive_failures == 0
        assert completed.failed_scrapes == 1
        assert completed.total_records_found == 4
        assert completed.total_attempts == 2

    def test_redelivery_after_completion_is_settled(self, tracker, clock) -> None:
        task = _task(clock)
        tracker.mark_processing(task)
        tracker.mark_completed(task, result_count=1, duration_ms=5)

        with pytest.raises(TaskAlreadySettledError):
            tracker.mark_processing(task)

    def test_newer_task_after_completion_runs_again(self, tracker, clock) -> None:
        task = _task(clock)
        tracker.mark_processing(task)
        tracker.mark_completed(task, result_count=1, duration_ms=5)

        clock.advance(days=8)
        state = tracker.mark_processing(_task(clock))
        assert state.status == ScrapeTaskStatus.PROCESSING

    def test_dead_lettered_key_rejects_same_profession_only(self, tracker, clock) -> None:
        task = _task(clock, scheduled_at=clock() - timedelta(hours=6))
        tracker.mark_processing(task)
        tracker.mark_failed(task, error="boom", duration_ms=10)
        tracker.mark_dead_lettered(task)

        with pytest.raises(TaskAlreadySettledError):
            tracker.mark_processing(task)

        other = tracker.mark_processing(_task(clock, profession="electrician"))
        assert other.status == ScrapeTaskStatus.PROCESSING
        assert other.profession == "electrician"

    def test_dead_lettered_key_accepts_a_later_schedule(self, tracker, clock) -> None:
        task = _task(clock, scheduled_at=clock() - timedelta(hours=6))
        tracker.mark_processing(task)
        tracker.mark_failed(task, error="boom", duration_ms=10)
        tracker.mark_dead_lettered(task)

        clock.advance(minutes=5)
        state = tracker.mark_processing(replace(task, scheduled_at=clock()))
        assert state.status == ScrapeTaskStatus.PROCESSING
        assert state.profession == "plumber"

    def test_sibling_completion_on_a_completed_key(self, tracker, clock) -> None:
        plumber = _task(clock)
        electrician = _task(clock, profession="electrician")
        tracker.mark_processing(plumber)
        tracker.mark_processing(electrician)

        tracker.mark_completed(plumber, result_count=2, duration_ms=10)
        state = tracker.mark_completed(electrician, result_count=3, duration_ms=10)

        assert state.status == ScrapeTaskStatus.COMPLETED
        assert state.profession == "electrician"
        assert state.successful_scrapes == 2
        assert state.total_records_found == 5

    def test_sibling_failure_on_a_completed_key(self, tracker, clock) -> None:
        plumber = _task(clock)
        electrician = _task(clock, profession="electrician")
        tracker.mark_processing(plumber)
        tracker.mark_processing(electrician)
        tracker.mark_completed(plumber, result_count=1, duration_ms=10)

        failed = tracker.mark_failed(electrician, error="boom", duration_ms=10)
        assert failed.status == ScrapeTaskStatus.FAILED
        assert failed.profession == "electrician"
        assert tracker.requeue(electrician).status == ScrapeTaskStatus.PENDING

    def test_completion_after_sibling_released_the_key(self, tracker, clock) -> None:
        plumber = _task(clock)
        electrician = _task(clock, profession="electrician")
        tracker.mark_processing(plumber)
        tracker.mark_processing(electrician)
        tracker.mark_failed(electrician, error="boom", duration_ms=10)
        tracker.requeue(electrician)

        state = tracker.mark_completed(plumber, result_count=1, duration_ms=10)
        assert state.status == ScrapeTaskStatus.COMPLETED
        assert state.profession == "plumber"

    def test_invalid_transition_leaves_state_untouched(self, tracker, clock) -> None:
        task = _task(clock)
        tracker.mark_queued(task)

        with pytest.raises(InvalidTransitionError):
            tracker.mark_completed(task, result_count=1, duration_ms=1)

        state = tracker.get(task.region_key, task.source_type)
        assert state is not None
        assert state.status == ScrapeTaskStatus.PENDING
        assert state.successful_scrapes == 0

    def test_deferral_releases_processing_task(self, tracker, clock) -> None:
        task = _task(clock)
        tracker.mark_processing(task)
        state = tracker.requeue(task)
        assert state.status == ScrapeTaskStatus.PENDING
        assert state.total_attempts == 0

    def test_list_states_filters_by_status(self, tracker, clock) -> None:
        done = _task(clock)
        pending = _task(clock, region_key="33109-FL")
        tracker.mark_processing(done)
        tracker.mark_completed(done, result_count=0, duration_ms=1)
        tracker.mark_queued(pending)

        completed = tracker.list_states(status=ScrapeTaskStatus.COMPLETED)
        assert [state.region_key for state in completed] == ["33101-FL"]
        assert len(tracker.list_states()) == 2
        assert tracker.list_states(source_type="TX_TREC") == []

    def test_stale_processing_task_is_reconciled(self, tracker, clock) -> None:
        stale = _task(clock)
        tracker.mark_processing(stale)
        clock.advance(seconds=200)
        fresh = _task(clock, region_key="33109-FL")
        tracker.mark_processing(fresh)

        clock.advance(seconds=150)
        reconciled = tracker.reconcile_stale()

        assert [state.region_key for state in reconciled] == ["33101-FL"]
        (state,) = reconciled
        assert state.status == ScrapeTaskStatus.FAILED
        assert state.consecutive_failures == 1
        assert "timed out" in (state.last_error or "")
        assert state.last_scrape_duration_ms == 350_000
        assert state.next_retry_at == clock() + timedelta(seconds=3600)

        untouched = tracker.get("33109-FL", "FL_DBPR")
        assert untouched is not None
        assert untouched.status == ScrapeTaskStatus.PROCESSING

    def test_reconcile_is_a_noop_when_nothing_is_stale(self, tracker, clock) -> None:
        tracker.mark_processing(_task(clock))
        assert tracker.reconcile_stale() == []


def test_failure_age_is_reported_for_failed_states(clock) -> None:
    tracker = InMemoryTaskStateTracker(policy=POLICY, now_fn=clock)
    task = _task(clock)
    tracker.mark_processing(task)
    failed = tracker.mark_failed(task, error="boom", duration_ms=1)

    assert failed.failure_age_hours(clock() + timedelta(minutes=90)) == 1.5
    completed = tracker.mark_completed(task, result_count=0, duration_ms=1)
    assert completed.failure_age_hours(clock()) is None


def test_sql_queue_health_groups_by_source(session_factory, clock) -> None:
    tracker = SQLAlchemyTaskStateTracker(session_factory=session_factory, policy=POLICY, now_fn=clock)
    done = _task(clock)
    tracker.mark_processing(done)
    tracker.mark_completed(done, result_count=3, duration_ms=100)
    tracker.mark_queued(_task(clock, region_key="33109-FL"))
    tracker.mark_queued(_task(clock, region_key="75001-TX", source_type="TX_TREC"))

    health = {row["source_type"]: row for row in tracker.queue_health()}

    assert health["FL_DBPR"]["total_keys"] == 2
    assert health["FL_DBPR"]["completed"] == 1
    assert health["FL_DBPR"]["pending"] == 1
    assert health["FL_DBPR"]["total_records_found"] == 3
    assert health["TX_TREC"]["pending"] == 1


def test_sql_concurrent_writers_lose_no_updates(session_factory, clock) -> None:
    task = _task(clock)
    SQLAlchemyTaskStateTracker(session_factory=session_factory, policy=POLICY, now_fn=clock).mark_processing(task)
    threads_count, writes_each = 4, 5
    barrier = threading.Barrier(threads_count)
    errors: list[BaseException] = []

    def _fail_repeatedly() -> None:
        tracker = SQLAlchemyTaskStateTracker(
            session_factory=session_factory,
            policy=POLICY,
            now_fn=clock,
            max_conflict_retries=500,
        )
        barrier.wait()
        try:
            for _ in range(writes_each):
                tracker.mark_failed(task, error="boom", duration_ms=1)
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=_fail_repeatedly) for _ in range(threads_count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    state = SQLAlchemyTaskStateTracker(session_factory=session_factory, policy=POLICY).get(
        task.region_key, task.source_type
    )
    assert state.failed_scrapes == threads_count * writes_each
    assert state.total_attempts == threads_count * writes_each
    assert state.consecutive_failures == threads_count * writes_each


def test_sql_stale_version_is_retried_not_lost(session_factory, clock) -> None:
    tracker = SQLAlchemyTaskStateTracker(session_factory=session_factory, policy=POLICY, now_fn=clock)
    task = _task(clock)
    tracker.mark_processing(task)
    rival = SQLAlchemyTaskStateTracker(session_factory=session_factory, policy=POLICY, now_fn=clock)

    calls = {"count": 0}

    def _failed_with_rival_write(state, now):
        calls["count"] += 1
        if calls["count"] == 1:
            # Another consumer commits between this read and this write.
            rival.mark_failed(task, error="rival", duration_ms=1)
        apply_failed(state, task, error="mine", duration_ms=1, now=now, policy=POLICY)

    state = tracker._mutate(task.region_key, task.source_type, _failed_with_rival_write)

    assert calls["count"] == 2
    assert state.failed_scrapes == 2
    assert state.last_error == "mine"
