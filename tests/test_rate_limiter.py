"""
tests/test_rate_limiter.py

Pacing decisions, throttles, window counters and the shared SQL limiter.
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app.config import RateLimitSettings
from app.consumer import rate_limiter as rate_limiter_module
from app.consumer.rate_limiter import (
    InMemoryRateLimiter,
    SQLAlchemyRateLimiter,
    advance_window,
    evaluate_rate_limit,
    min_delay_ms,
    running_average,
)

SOURCE = "stateLicenseDB"
REGION = "33101-FL"


# ---------------------------------------------------------------------------
# Pure decision helpers
# ---------------------------------------------------------------------------


class TestEvaluateRateLimit:
    def test_first_request_is_allowed(self, clock) -> None:
        decision = evaluate_rate_limit(
            requests_per_second=1.0,
            last_request_at=None,
            is_throttled=False,
            throttled_until=None,
            now=clock(),
        )
        assert decision.allowed
        assert decision.wait_ms == 0

    def test_request_inside_interval_waits_for_remainder(self, clock) -> None:
        decision = evaluate_rate_limit(
            requests_per_second=1.0,
            last_request_at=clock() - timedelta(milliseconds=250),
            is_throttled=False,
            throttled_until=None,
            now=clock(),
        )
        assert not decision.allowed
        assert decision.wait_ms == 750

    def test_active_throttle_wins_over_elapsed_interval(self, clock) -> None:
        decision = evaluate_rate_limit(
            requests_per_second=1.0,
            last_request_at=clock() - timedelta(hours=1),
            is_throttled=True,
            throttled_until=clock() + timedelta(seconds=30),
            now=clock(),
        )
        assert not decision.allowed
        assert decision.wait_ms == 30_000

    def test_expired_throttle_is_ignored(self, clock) -> None:
        decision = evaluate_rate_limit(
            requests_per_second=1.0,
            last_request_at=None,
            is_throttled=True,
            throttled_until=clock() - timedelta(seconds=1),
            now=clock(),
        )
        assert decision.allowed

    def test_min_delay_rejects_non_positive_rate(self) -> None:
        with pytest.raises(ValueError):
            min_delay_ms(0)
        assert min_delay_ms(4.0) == 250.0


def test_advance_window_opens_new_window_after_expiry(clock) -> None:
    count, started = advance_window(0, None, now=clock(), length_seconds=60)
    assert (count, started) == (1, clock())

    count, started = advance_window(count, started, now=clock() + timedelta(seconds=30), length_seconds=60)
    assert (count, started) == (2, clock())

    later = clock() + timedelta(seconds=61)
    assert advance_window(count, started, now=later, length_seconds=60) == (1, later)


def test_running_average() -> None:
    assert running_average(None, 120, 1) == 120.0
    assert running_average(100.0, 200, 2) == 150.0


# ---------------------------------------------------------------------------
# In-memory limiter
# ---------------------------------------------------------------------------


class TestInMemoryRateLimiter:
    @pytest.fixture()
    def limiter(self, clock) -> InMemoryRateLimiter:
        return InMemoryRateLimiter(settings=RateLimitSettings(), now_fn=clock)

    def test_back_to_back_requests_wait_one_interval(self, limiter, clock) -> None:
        assert limiter.allow(SOURCE, REGION).allowed

        second = limiter.allow(SOURCE, REGION)
        assert not second.allowed
        assert second.wait_ms == 1000

        clock.advance(seconds=1)
        assert limiter.allow(SOURCE, REGION).allowed

    def test_keys_are_paced_independently(self, limiter) -> None:
        assert limiter.allow(SOURCE, REGION).allowed
        assert limiter.allow(SOURCE, "33109-FL").allowed
        assert limiter.allow("FL_DBPR", REGION).allowed

    def test_configure_changes_pacing(self, limiter) -> None:
        limiter.configure(SOURCE, REGION, requests_per_second=2.0)
        limiter.allow(SOURCE, REGION)
        assert limiter.allow(SOURCE, REGION).wait_ms == 500

    def test_configure_rejects_zero_rate(self, limiter) -> None:
        with pytest.raises(ValueError):
            limiter.configure(SOURCE, REGION, requests_per_second=0)

    def test_throttle_and_release(self, limiter, clock) -> None:
        limiter.throttle(SOURCE, REGION, until=clock() + timedelta(minutes=5))
        decision = limiter.allow(SOURCE, REGION)
        assert not decision.allowed
        assert decision.wait_ms == 300_000

        limiter.throttle(SOURCE, REGION, until=None)
        assert limiter.allow(SOURCE, REGION).allowed

    def test_record_request_updates_windows_and_average(self, limiter, clock) -> None:
        limiter.record_request(SOURCE, REGION, 100)
        limiter.record_request(SOURCE, REGION, 300)

        (snapshot,) = limiter.snapshots()
        assert snapshot.second_count == 2
        assert snapshot.day_count == 2
        assert snapshot.total_requests == 2
        assert snapshot.average_request_duration_ms == 200.0

        clock.advance(seconds=5)
        (snapshot,) = limiter.snapshots()
        assert snapshot.second_count == 0
        assert snapshot.minute_count == 2

    def test_denials_are_counted(self, limiter) -> None:
        limiter.allow(SOURCE, REGION)
        limiter.allow(SOURCE, REGION)
        limiter.allow(SOURCE, REGION)
        (snapshot,) = limiter.snapshots()
        assert snapshot.total_throttled == 2

    def test_concurrent_callers_get_one_slot(self, limiter) -> None:
        barrier = threading.Barrier(8)
        decisions = []
        lock = threading.Lock()

        def _call() -> None:
            barrier.wait()
            decision = limiter.allow(SOURCE, REGION)
            with lock:
                decisions.append(decision)

        threads = [threading.Thread(target=_call) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sum(1 for decision in decisions if decision.allowed) == 1
        assert all(decision.wait_ms == 1000 for decision in decisions if not decision.allowed)


# ---------------------------------------------------------------------------
# SQL limiter
# ---------------------------------------------------------------------------


class TestSQLAlchemyRateLimiter:
    @pytest.fixture()
    def limiter(self, session_factory, clock) -> SQLAlchemyRateLimiter:
        return SQLAlchemyRateLimiter(
            session_factory=session_factory,
            settings=RateLimitSettings(),
            now_fn=clock,
        )

    def test_reservation_is_shared_between_instances(self, limiter, session_factory, clock) -> None:
        other = SQLAlchemyRateLimiter(
            session_factory=session_factory,
            settings=RateLimitSettings(),
            now_fn=clock,
        )

        assert limiter.allow(SOURCE, REGION).allowed
        denied = other.allow(SOURCE, REGION)
        assert not denied.allowed
        assert denied.wait_ms == 1000

        clock.advance(milliseconds=1000)
        assert other.allow(SOURCE, REGION).allowed

    def test_concurrent_instances_share_one_slot(self, session_factory, clock) -> None:
        settings = RateLimitSettings(max_conflict_retries=50)
        SQLAlchemyRateLimiter(
            session_factory=session_factory, settings=settings, now_fn=clock
        ).configure(SOURCE, REGION, requests_per_second=1.0)
        barrier = threading.Barrier(6)
        decisions = []
        lock = threading.Lock()

        def _call() -> None:
            limiter = SQLAlchemyRateLimiter(
                session_factory=session_factory, settings=settings, now_fn=clock
            )
            barrier.wait()
            decision = limiter.allow(SOURCE, REGION)
            with lock:
                decisions.append(decision)

        threads = [threading.Thread(target=_call) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(decisions) == 6
        assert sum(1 for decision in decisions if decision.allowed) == 1
        assert all(decision.wait_ms > 0 for decision in decisions if not decision.allowed)

    def test_lost_race_is_re_evaluated(self, limiter, session_factory, clock, monkeypatch) -> None:
        limiter.configure(SOURCE, REGION, requests_per_second=1.0)
        rival = SQLAlchemyRateLimiter(
            session_factory=session_factory,
            settings=RateLimitSettings(),
            now_fn=clock,
        )
        original = rate_limiter_module.evaluate_rate_limit
        calls = {"count": 0}

        def _evaluate_after_rival_reserves(**kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                # Another consumer takes the slot between this read and this write.
                assert rival.allow(SOURCE, REGION).allowed
            return original(**kwargs)

        monkeypatch.setattr(rate_limiter_module, "evaluate_rate_limit", _evaluate_after_rival_reserves)

        decision = limiter.allow(SOURCE, REGION)

        assert not decision.allowed
        assert decision.wait_ms == 1000
        assert calls["count"] == 3

    def test_record_request_and_snapshot(self, limiter) -> None:
        limiter.allow(SOURCE, REGION)
        limiter.allow(SOURCE, REGION)
        limiter.record_request(SOURCE, REGION, 250)

        (snapshot,) = limiter.snapshots()
        assert snapshot.source_type == SOURCE
        assert snapshot.region_key == REGION
        assert snapshot.total_requests == 1
        assert snapshot.total_throttled == 1
        assert snapshot.second_count == 1
        assert snapshot.average_request_duration_ms == 250.0

    def test_throttle_is_persisted(self, limiter, clock) -> None:
        limiter.throttle(SOURCE, REGION, until=clock() + timedelta(seconds=45))
        decision = limiter.allow(SOURCE, REGION)
        assert not decision.allowed
        assert decision.wait_ms == 45_000

        (snapshot,) = limiter.snapshots()
        assert snapshot.is_throttled
        assert snapshot.throttled_until == clock() + timedelta(seconds=45)

    def test_configure_persists_rate(self, limiter) -> None:
        limiter.configure(SOURCE, REGION, requests_per_second=4.0)
        limiter.allow(SOURCE, REGION)
        assert limiter.allow(SOURCE, REGION).wait_ms == 250

    def test_unreachable_store_fails_closed(self, clock) -> None:
        def _broken_factory():
            raise OperationalError("SELECT 1", {}, Exception("connection refused"))

        settings = RateLimitSettings(fail_closed_wait_ms=1500)
        limiter = SQLAlchemyRateLimiter(
            session_factory=_broken_factory,  # type: ignore[arg-type]
            settings=settings,
            now_fn=clock,
        )
        decision = limiter.allow(SOURCE, REGION)
        assert not decision.allowed
        assert decision.wait_ms == 1500
