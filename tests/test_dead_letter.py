"""
tests/test_dead_letter.py

Exactly-once quarantine and the operator resolve/requeue workflow.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from app.config import RetryPolicySettings
from app.consumer.dead_letter import (
    InMemoryDeadLetterSink,
    SQLAlchemyDeadLetterSink,
    describe_error,
)
from app.consumer.errors import InvocationError, TerminalError
from app.consumer.queue import InMemoryScrapeQueue
from app.consumer.task_state import InMemoryTaskStateTracker
from app.domain.scrape_task import QueueMessage, ScrapeTask
from db.models.scrape_task_state import ScrapeTaskStatus
from db.repositories.dead_letter_repository import DeadLetterRepository
from db.repositories.errors import DeadLetterNotFoundError


def _message(clock, message_id: str = "msg-1") -> QueueMessage:
    task = ScrapeTask(
        region_key="33101-FL",
        source_type="FL_DBPR",
        profession="plumber",
        scheduled_at=clock() - timedelta(hours=3),
    )
    return QueueMessage(message_id=message_id, task=task, attempts=3)


def _terminal_error() -> TerminalError:
    try:
        raise InvocationError("Scraper timed out after 30s.")
    except InvocationError as exc:
        return TerminalError("Giving up after 3 attempts", attempts=3, cause=exc)


@pytest.fixture(params=["memory", "sql"])
def sink(request, clock):
    if request.param == "memory":
        return InMemoryDeadLetterSink(worker_version="1.2.0", now_fn=clock)
    return SQLAlchemyDeadLetterSink(
        session_factory=request.getfixturevalue("session_factory"),
        worker_version="1.2.0",
        now_fn=clock,
    )


def test_describe_error_reports_terminal_cause() -> None:
    message, stack = describe_error(_terminal_error())
    assert message == "Giving up after 3 attempts"
    assert stack is not None
    assert "InvocationError" in stack
    assert "Scraper timed out" in stack


def test_describe_error_handles_missing_error() -> None:
    assert describe_error(None) == ("Unknown error", None)
    assert describe_error("plain failure") == ("plain failure", None)


class TestDeadLetterSink:
    def test_quarantine_is_exactly_once_per_message(self, sink, clock) -> None:
        message = _message(clock)

        assert sink.quarantine(message, _terminal_error(), 3) is True
        assert sink.quarantine(message, _terminal_error(), 3) is False

        (entry,) = sink.list_unresolved()
        assert entry.message_id == "msg-1"
        assert entry.retry_count == 3
        assert entry.region_key == "33101-FL"
        assert entry.worker_version == "1.2.0"
        assert entry.failed_at == clock()
        assert entry.original_scheduled_at == clock() - timedelta(hours=3)
        assert entry.message_body["profession"] == "plumber"
        assert "Scraper timed out" in (entry.error_stack or "")
        assert not entry.resolved

    def test_list_unresolved_is_newest_first(self, sink, clock) -> None:
        sink.quarantine(_message(clock, "older"), "boom", 3)
        clock.advance(minutes=5)
        sink.quarantine(_message(clock, "newer"), "boom", 3)

        assert [entry.message_id for entry in sink.list_unresolved()] == ["newer", "older"]
        assert len(sink.list_unresolved(limit=1)) == 1

    def test_resolve_marks_entry_and_hides_it(self, sink, clock) -> None:
        sink.quarantine(_message(clock), "boom", 3)
        (entry,) = sink.list_unresolved()

        clock.advance(hours=2)
        resolved = sink.resolve(entry.id, resolved_by="ops@example.com", notes="Source was down")

        assert resolved.resolved
        assert resolved.resolved_by == "ops@example.com"
        assert resolved.resolution_notes == "Source was down"
        assert resolved.resolved_at == clock()
        assert resolved.failure_age_hours(clock()) == 2.0
        assert sink.list_unresolved() == []
        assert sink.get(entry.id) is not None

    def test_resolve_unknown_entry_raises(self, sink) -> None:
        with pytest.raises(DeadLetterNotFoundError):
            sink.resolve(404, resolved_by="ops")

    def test_resurrect_enqueues_fresh_task_and_resolves(self, sink, clock) -> None:
        sink.quarantine(_message(clock), "boom", 3)
        (entry,) = sink.list_unresolved()
        queue = InMemoryScrapeQueue(now_fn=clock)

        message = sink.resurrect(entry.id, queue, resolved_by="ops")

        assert queue.depth() == 1
        assert message.message_id != "msg-1"
        assert message.task.region_key == "33101-FL"
        assert message.task.profession == "plumber"
        assert message.task.scheduled_at == clock()
        resolved = sink.get(entry.id)
        assert resolved is not None and resolved.resolved
        assert resolved.resolution_notes == f"Requeued as message {message.message_id}"

    def test_count_unresolved_is_not_capped_by_listing(self, sink, clock) -> None:
        for index in range(55):
            sink.quarantine(_message(clock, f"msg-{index}"), "boom", 3)
        (newest, *_) = sink.list_unresolved()
        sink.resolve(newest.id, resolved_by="ops")

        assert len(sink.list_unresolved()) == 50
        assert sink.count_unresolved() == 54

    def test_resurrect_resets_the_tracked_key(self, sink, clock) -> None:
        tracker = InMemoryTaskStateTracker(policy=RetryPolicySettings(), now_fn=clock)
        message = _message(clock)
        tracker.mark_processing(message.task)
        tracker.mark_dead_lettered(message.task)
        sink.quarantine(message, "boom", 3)
        (entry,) = sink.list_unresolved()

        resurrected = sink.resurrect(entry.id, InMemoryScrapeQueue(now_fn=clock), tracker=tracker)

        state = tracker.get("33101-FL", "FL_DBPR")
        assert state.status == ScrapeTaskStatus.PENDING
        assert state.queued_at == clock()
        assert tracker.mark_processing(resurrected.task).status == ScrapeTaskStatus.PROCESSING

    def test_resurrect_unknown_entry_raises(self, sink, clock) -> None:
        with pytest.raises(DeadLetterNotFoundError):
            sink.resurrect(99, InMemoryScrapeQueue(now_fn=clock))


def test_sql_entries_are_kept_after_resolution(session_factory, clock) -> None:
    sink = SQLAlchemyDeadLetterSink(session_factory=session_factory, worker_version="1.0.0", now_fn=clock)
    sink.quarantine(_message(clock), "boom", 3)
    (entry,) = sink.list_unresolved()
    sink.resolve(entry.id, resolved_by="ops")

    with session_factory() as session:
        repository = DeadLetterRepository(session)
        assert repository.count_unresolved() == 0
        stored = repository.get_by_message_id("msg-1")
        assert stored is not None
        assert stored.resolved
