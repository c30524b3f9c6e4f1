from __future__ import annotations

from dataclasses import replace

import pytest
from sqlalchemy.exc import OperationalError

from app.consumer.errors import PersistenceError
from app.consumer.storage import SQLAlchemyResultStore
from app.domain.scrape_task import ScrapeTask
from db.repositories.raw_record_repository import RawRecordRepository

TASK = ScrapeTask(region_key="33101-FL", source_type="FL_DBPR", profession="plumber")


@pytest.fixture()
def store(session_factory, clock) -> SQLAlchemyResultStore:
    return SQLAlchemyResultStore(session_factory=session_factory, now_fn=clock)


def test_empty_batch_stores_nothing(store) -> None:
    assert store.upsert([], TASK) == 0


def test_upsert_is_idempotent_per_source_record(store, session_factory, clock, record_factory) -> None:
    first = record_factory("CFC100")
    second = record_factory("CFC200", name="Bright Pipes")

    assert store.upsert([first, second], TASK) == 2

    clock.advance(hours=1)
    changed = replace(first, phone="305-555-0199", license_status="inactive")
    assert store.upsert([changed, second], TASK) == 2

    with session_factory() as session:
        repository = RawRecordRepository(session)
        assert repository.count(source="FL_DBPR") == 2
        row = repository.get(source="FL_DBPR", source_record_id="CFC100")
        assert row is not None
        assert row.phone == "305-555-0199"
        assert row.license_status == "inactive"
        assert row.status == "new"
        assert row.last_updated is not None
        assert row.category == "plumber"


def test_same_license_from_another_source_is_a_new_row(store, session_factory, record_factory) -> None:
    store.upsert([record_factory("X1")], TASK)
    store.upsert([record_factory("X1", source="TX_TREC")], TASK)

    with session_factory() as session:
        assert RawRecordRepository(session).count() == 2


def test_total_failure_raises_persistence_error(clock, record_factory) -> None:
    def _broken_factory():
        raise OperationalError("INSERT", {}, Exception("disk full"))

    store = SQLAlchemyResultStore(session_factory=_broken_factory, now_fn=clock)  # type: ignore[arg-type]
    with pytest.raises(PersistenceError):
        store.upsert([record_factory("CFC100")], TASK)
