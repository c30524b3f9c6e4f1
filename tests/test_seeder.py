"""
tests/test_seeder.py

Seed task construction and the requeue skip rules.
"""

from __future__ import annotations

import pytest

from app.config import RetryPolicySettings
from app.consumer.errors import QueueError
from app.consumer.queue import InMemoryScrapeQueue
from app.consumer.seeder import (
    SAMPLE_ZIP_CODES,
    STATE_SOURCE_MAP,
    TaskSeeder,
    build_seed_tasks,
    should_skip,
)
from app.consumer.task_state import InMemoryTaskStateTracker


@pytest.fixture()
def tracker(clock) -> InMemoryTaskStateTracker:
    return InMemoryTaskStateTracker(policy=RetryPolicySettings(), now_fn=clock)


@pytest.fixture()
def queue(clock) -> InMemoryScrapeQueue:
    return InMemoryScrapeQueue(now_fn=clock)


@pytest.fixture()
def seeder(queue, tracker, clock) -> TaskSeeder:
    return TaskSeeder(queue=queue, tracker=tracker, now_fn=clock)


# ---------------------------------------------------------------------------
# Task construction
# ---------------------------------------------------------------------------


def test_build_seed_tasks_for_selected_states(clock) -> None:
    tasks = build_seed_tasks(zip_codes=SAMPLE_ZIP_CODES, states=["fl"], now=clock())

    assert len(tasks) == 5
    assert tasks[0].region_key == "33101-FL"
    assert {task.source_type for task in tasks} == {"FL_DBPR"}
    assert {task.profession for task in tasks} == {"real_estate"}
    assert all(task.scheduled_at == clock() for task in tasks)


def test_build_seed_tasks_covers_every_mapped_state() -> None:
    tasks = build_seed_tasks(zip_codes=SAMPLE_ZIP_CODES, profession="plumber", priority=2)

    assert len(tasks) == 5 * len(STATE_SOURCE_MAP)
    assert {task.source_type for task in tasks} == set(STATE_SOURCE_MAP.values())
    assert {task.priority for task in tasks} == {2}


def test_unknown_states_are_skipped() -> None:
    tasks = build_seed_tasks(zip_codes={"NV": ["89101"], "TX": ["75001"]}, states=["NV", "TX"])
    assert [task.region_key for task in tasks] == ["75001-TX"]


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------


def _tasks(clock, states=("FL",)):
    return build_seed_tasks(zip_codes=SAMPLE_ZIP_CODES, states=list(states), now=clock())


def test_seed_enqueues_and_marks_pending(seeder, queue, tracker, clock) -> None:
    summary = seeder.seed(_tasks(clock))

    assert (summary.queued, summary.skipped, summary.errors) == (5, 0, 0)
    assert queue.depth() == 5
    state = tracker.get("33101-FL", "FL_DBPR")
    assert state.status == "pending"
    assert state.queued_at == clock()


def test_already_queued_keys_are_skipped(seeder, queue, clock) -> None:
    seeder.seed(_tasks(clock))
    summary = seeder.seed(_tasks(clock))

    assert summary.skipped == 5
    assert queue.depth() == 5


def test_force_bypasses_skip_rules(seeder, queue, clock) -> None:
    seeder.seed(_tasks(clock))
    summary = seeder.seed(_tasks(clock), force=True)

    assert summary.queued == 5
    assert queue.depth() == 10


def test_recently_completed_key_waits_seven_days(seeder, tracker, clock) -> None:
    (task, *_) = _tasks(clock)
    tracker.mark_processing(task)
    tracker.mark_completed(task, result_count=3, duration_ms=100)

    clock.advance(days=3)
    assert seeder.seed([task]).skipped == 1

    clock.advance(days=5)
    assert seeder.seed([task]).queued == 1


def test_recently_failed_key_waits_a_day(seeder, tracker, clock) -> None:
    (task, *_) = _tasks(clock)
    tracker.mark_processing(task)
    tracker.mark_failed(task, error="boom", duration_ms=10)

    clock.advance(hours=23)
    assert seeder.seed([task]).skipped == 1

    clock.advance(hours=2)
    assert seeder.seed([task]).queued == 1


def test_processing_and_dead_lettered_keys_are_skipped(seeder, tracker, clock) -> None:
    first, second, *_ = _tasks(clock)
    tracker.mark_processing(first)
    tracker.mark_processing(second)
    tracker.mark_failed(second, error="boom", duration_ms=1)
    tracker.mark_dead_lettered(second)

    clock.advance(days=30)
    summary = seeder.seed([first, second])
    assert summary.skipped == 2


def test_should_skip_unknown_key(clock) -> None:
    assert should_skip(None, now=clock()) is False


def test_seed_failure_is_reported_per_task(seeder, queue, tracker, clock, monkeypatch) -> None:
    tasks = _tasks(clock)
    calls = {"count": 0}
    original = queue.enqueue

    def _flaky_enqueue(task, *, delay_seconds=0):
        calls["count"] += 1
        if calls["count"] == 2:
            raise QueueError("queue unavailable")
        return original(task, delay_seconds=delay_seconds)

    monkeypatch.setattr(queue, "enqueue", _flaky_enqueue)
    summary = seeder.seed(tasks)

    assert summary.queued == 4
    assert summary.errors == 1
    assert summary.error_messages[0].startswith("33109-FL/FL_DBPR")
    assert queue.depth() == 4
