"""
tests/test_api.py

HTTP surface: health, stats, task states and the dead-letter workflow,
served from a consumer service on a throwaway SQLite database.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.config import (
    ConsumerSettings,
    RateLimitSettings,
    RetryPolicySettings,
    ScraperServiceSettings,
)
from app.domain.scrape_task import Provenance, QueueMessage, ScrapeResult, ScrapeTask
from app.main import app
from app.services.consumer_service import ConsumerService, get_consumer_service


@pytest.fixture()
def service(session_factory, invoker, record_factory) -> ConsumerService:
    invoker.default = ScrapeResult(records=[record_factory("CFC100")], provenance=Provenance.LIVE)
    return ConsumerService(
        session_factory=session_factory,
        consumer_settings=ConsumerSettings(queue_name="scrape-test", worker_version="3.1.0"),
        retry_policy=RetryPolicySettings(),
        rate_limit_settings=RateLimitSettings(),
        scraper_settings=ScraperServiceSettings(),
        invoker=invoker,
    )


@pytest.fixture()
def client(service):
    app.dependency_overrides[get_consumer_service] = lambda: service
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _quarantine(service: ConsumerService, message_id: str = "dead-1") -> int:
    task = ScrapeTask(region_key="75001-TX", source_type="TX_TREC", profession="real_estate")
    service.dead_letter_sink.quarantine(
        QueueMessage(message_id=message_id, task=task, attempts=3),
        "Scraper timed out after 30s.",
        3,
    )
    (entry,) = [record for record in service.list_dead_letters() if record.message_id == message_id]
    return entry.id


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["version"]
    assert body["timestamp"]


def test_stats_after_one_batch(client, service) -> None:
    task = ScrapeTask(region_key="33101-FL", source_type="FL_DBPR", profession="plumber")
    assert service.seed([task]).queued == 1
    summary = service.run_batch()
    assert (summary.received, summary.acked) == (1, 1)

    response = client.get("/stats", params={"limit": 10})

    assert response.status_code == 200
    body = response.json()
    assert body["queue_depth"] == 0
    assert body["unresolved_dead_letters"] == 0
    (activity,) = body["recent_activity"]
    assert activity["status"] == "completed"
    assert activity["region_key"] == "33101-FL"
    assert activity["result_count"] == 1
    assert activity["stored_count"] == 1
    assert activity["worker_version"] == "3.1.0"
    (health,) = body["queue_health"]
    assert health["source_type"] == "FL_DBPR"
    assert health["completed"] == 1
    (task_health,) = body["task_health"]
    assert task_health["completed"] == 1
    (rate_limit,) = body["rate_limits"]
    assert rate_limit["region_key"] == "33101-FL"
    assert rate_limit["total_requests"] == 1


def test_task_states_filter(client, service) -> None:
    service.seed(
        [
            ScrapeTask(region_key="33101-FL", source_type="FL_DBPR", profession="plumber"),
            ScrapeTask(region_key="75001-TX", source_type="TX_TREC", profession="plumber"),
        ]
    )

    response = client.get("/task-states", params={"source_type": "TX_TREC"})

    assert response.status_code == 200
    (state,) = response.json()
    assert state["region_key"] == "75001-TX"
    assert state["status"] == "pending"
    assert state["hours_since_failure"] is None


def test_list_dead_letters(client, service) -> None:
    _quarantine(service)

    response = client.get("/dead-letters")

    assert response.status_code == 200
    (entry,) = response.json()
    assert entry["message_id"] == "dead-1"
    assert entry["retry_count"] == 3
    assert entry["error_message"] == "Scraper timed out after 30s."
    assert entry["resolved"] is False
    assert entry["hours_since_failure"] is not None


def test_resolve_dead_letter(client, service) -> None:
    entry_id = _quarantine(service)

    response = client.post(
        f"/dead-letters/{entry_id}/resolve",
        json={"resolved_by": "ops@example.com", "notes": "License board outage"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["resolved"] is True
    assert body["resolved_by"] == "ops@example.com"
    assert body["resolution_notes"] == "License board outage"
    assert client.get("/dead-letters").json() == []


def test_resolve_requires_operator(client, service) -> None:
    entry_id = _quarantine(service)

    response = client.post(f"/dead-letters/{entry_id}/resolve", json={"resolved_by": ""})

    assert response.status_code == 422


def test_resolve_unknown_entry_is_404(client) -> None:
    response = client.post("/dead-letters/999/resolve", json={"resolved_by": "ops"})
    assert response.status_code == 404


def test_requeue_dead_letter(client, service) -> None:
    entry_id = _quarantine(service)

    response = client.post(f"/dead-letters/{entry_id}/requeue", json={"resolved_by": "ops"})

    assert response.status_code == 202
    body = response.json()
    assert body["entry_id"] == entry_id
    assert body["region_key"] == "75001-TX"
    assert body["message_id"] != "dead-1"
    assert service.queue.depth() == 1
    state = service.task_tracker.get("75001-TX", "TX_TREC")
    assert state is not None and state.status == "pending"
    assert service.list_dead_letters() == []


def test_requeued_dead_letter_is_processed_by_next_batch(client, service) -> None:
    task = ScrapeTask(region_key="75001-TX", source_type="TX_TREC", profession="real_estate")
    service.task_tracker.mark_processing(task)
    service.task_tracker.mark_dead_lettered(task)
    entry_id = _quarantine(service)
    assert client.get("/stats").json()["unresolved_dead_letters"] == 1

    assert client.post(f"/dead-letters/{entry_id}/requeue").status_code == 202
    summary = service.run_batch()

    assert (summary.received, summary.acked, summary.retried) == (1, 1, 0)
    state = service.task_tracker.get("75001-TX", "TX_TREC")
    assert state is not None and state.status == "completed"
    assert client.get("/stats").json()["unresolved_dead_letters"] == 0


def test_requeue_without_body_uses_default_operator(client, service) -> None:
    entry_id = _quarantine(service)

    response = client.post(f"/dead-letters/{entry_id}/requeue")

    assert response.status_code == 202
    record = service.dead_letter_sink.get(entry_id)
    assert record is not None and record.resolved_by == "operator"


def test_requeue_unknown_entry_is_404(client) -> None:
    response = client.post("/dead-letters/999/requeue")
    assert response.status_code == 404
