"""
Per-(source_type, region_key) request rate limiter.

Both implementations make ``allow`` a single atomic check-and-reserve: an
allowed decision stamps ``last_request_at`` in the same step, so two
concurrent callers for one key can never both be allowed inside one pacing
interval.
"""

from __future__ import annotations

import logging
import math
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.config import RateLimitSettings
from app.consumer.logging_utils import log_event
from db.base import as_utc, utc_now
from db.models.rate_limit import RateLimit
from db.repositories.rate_limit_repository import RateLimitRepository

logger = logging.getLogger(__name__)

WINDOW_LENGTHS: tuple[tuple[str, int], ...] = (
    ("second", 1),
    ("minute", 60),
    ("hour", 3600),
    ("day", 86400),
)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    wait_ms: int = 0


@dataclass(frozen=True)
class RateLimitSnapshot:
    """
    Read-only status of one key for the stats surface.
    """

    source_type: str
    region_key: str
    requests_per_second: float
    is_throttled: bool
    throttled_until: datetime | None
    last_request_at: datetime | None
    second_count: int
    minute_count: int
    hour_count: int
    day_count: int
    total_requests: int
    total_throttled: int
    average_request_duration_ms: float | None


def min_delay_ms(requests_per_second: float) -> float:
    if requests_per_second <= 0:
        raise ValueError("requests_per_second must be > 0")
    return 1000.0 / requests_per_second


def evaluate_rate_limit(
    *,
    requests_per_second: float,
    last_request_at: datetime | None,
    is_throttled: bool,
    throttled_until: datetime | None,
    now: datetime,
) -> RateLimitDecision:
    """
    Decide whether a request for one key may go out at ``now``.

    An active throttle wins over elapsed-time pacing.
    """

    if is_throttled and throttled_until is not None and now < throttled_until:
        wait = (throttled_until - now).total_seconds() * 1000.0
        return RateLimitDecision(allowed=False, wait_ms=max(1, math.ceil(wait)))

    if last_request_at is None:
        return RateLimitDecision(allowed=True)

    interval_ms = min_delay_ms(requests_per_second)
    elapsed_ms = (now - last_request_at).total_seconds() * 1000.0
    if elapsed_ms < interval_ms:
        return RateLimitDecision(
            allowed=False,
            wait_ms=max(1, math.ceil(interval_ms - elapsed_ms)),
        )
    return RateLimitDecision(allowed=True)


def window_expired(started_at: datetime | None, *, now: datetime, length_seconds: int) -> bool:
    return started_at is None or now - started_at >= timedelta(seconds=length_seconds)


def advance_window(
    count: int,
    started_at: datetime | None,
    *,
    now: datetime,
    length_seconds: int,
) -> tuple[int, datetime]:
    """
    Count one request in a fixed window, opening a fresh window when the
    previous one has elapsed.
    """

    if window_expired(started_at, now=now, length_seconds=length_seconds):
        return 1, now
    assert started_at is not None
    return count + 1, started_at


def current_window_count(
    count: int,
    started_at: datetime | None,
    *,
    now: datetime,
    length_seconds: int,
) -> int:
    if window_expired(started_at, now=now, length_seconds=length_seconds):
        return 0
    return count


def running_average(previous: float | None, sample: float, total: int) -> float:
    if previous is None or total <= 1:
        return float(sample)
    return previous + (sample - previous) / total


class RateLimiter(ABC):
    """
    Pacing gate shared by every dispatcher instance.
    """

    @abstractmethod
    def allow(self, source_type: str, region_key: str) -> RateLimitDecision:
        """
        Check the key and, when allowed, reserve the current slot.
        """

    @abstractmethod
    def record_request(self, source_type: str, region_key: str, duration_ms: int) -> None:
        """
        Count one completed outbound request against the key's windows.
        """

    @abstractmethod
    def configure(self, source_type: str, region_key: str, *, requests_per_second: float) -> None:
        """
        Set the throughput for a key.
        """

    @abstractmethod
    def throttle(self, source_type: str, region_key: str, *, until: datetime | None) -> None:
        """
        Defer every request for the key until ``until``; ``None`` lifts the throttle.
        """

    @abstractmethod
    def snapshots(self) -> list[RateLimitSnapshot]:
        """
        Current status of every known key.
        """


@dataclass
class _KeyState:
    requests_per_second: float
    is_throttled: bool = False
    throttled_until: datetime | None = None
    last_request_at: datetime | None = None
    last_request_duration_ms: int | None = None
    average_request_duration_ms: float | None = None
    total_requests: int = 0
    total_throttled: int = 0
    windows: dict[str, tuple[int, datetime | None]] = field(
        default_factory=lambda: {name: (0, None) for name, _ in WINDOW_LENGTHS}
    )


class InMemoryRateLimiter(RateLimiter):
    """
    Single-process limiter; the lock makes it the single writer for every key.
    """

    def __init__(
        self,
        *,
        settings: RateLimitSettings,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings
        self._now = now_fn
        self._keys: dict[tuple[str, str], _KeyState] = {}
        self._lock = threading.Lock()

    def _state(self, source_type: str, region_key: str) -> _KeyState:
        key = (source_type, region_key)
        state = self._keys.get(key)
        if state is None:
            state = _KeyState(requests_per_second=self._settings.default_requests_per_second)
            self._keys[key] = state
        return state

    def allow(self, source_type: str, region_key: str) -> RateLimitDecision:
        with self._lock:
            now = self._now()
            state = self._state(source_type, region_key)
            decision = evaluate_rate_limit(
                requests_per_second=state.requests_per_second,
                last_request_at=state.last_request_at,
                is_throttled=state.is_throttled,
                throttled_until=state.throttled_until,
                now=now,
            )
            if decision.allowed:
                state.last_request_at = now
            else:
                state.total_throttled += 1
            return decision

    def record_request(self, source_type: str, region_key: str, duration_ms: int) -> None:
        with self._lock:
            now = self._now()
            state = self._state(source_type, region_key)
            for name, length in WINDOW_LENGTHS:
                count, started_at = state.windows[name]
                state.windows[name] = advance_window(
                    count, started_at, now=now, length_seconds=length
                )
            state.total_requests += 1
            state.last_request_duration_ms = duration_ms
            state.average_request_duration_ms = running_average(
                state.average_request_duration_ms, duration_ms, state.total_requests
            )

    def configure(self, source_type: str, region_key: str, *, requests_per_second: float) -> None:
        min_delay_ms(requests_per_second)
        with self._lock:
            self._state(source_type, region_key).requests_per_second = requests_per_second

    def throttle(self, source_type: str, region_key: str, *, until: datetime | None) -> None:
        with self._lock:
            state = self._state(source_type, region_key)
            state.is_throttled = until is not None
            state.throttled_until = until

    def snapshots(self) -> list[RateLimitSnapshot]:
        with self._lock:
            now = self._now()
            return [
                RateLimitSnapshot(
                    source_type=source_type,
                    region_key=region_key,
                    requests_per_second=state.requests_per_second,
                    is_throttled=state.is_throttled,
                    throttled_until=state.throttled_until,
                    last_request_at=state.last_request_at,
                    total_requests=state.total_requests,
                    total_throttled=state.total_throttled,
                    average_request_duration_ms=state.average_request_duration_ms,
                    **{
                        f"{name}_count": current_window_count(
                            *state.windows[name], now=now, length_seconds=length
                        )
                        for name, length in WINDOW_LENGTHS
                    },
                )
                for (source_type, region_key), state in sorted(self._keys.items())
            ]


class SQLAlchemyRateLimiter(RateLimiter):
    """
    Limiter backed by the shared ``rate_limits`` table.

    Every write is a versioned UPDATE; a concurrent writer makes the loser
    raise StaleDataError and re-evaluate against the winner's reservation.
    An unreachable store fails closed.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        settings: RateLimitSettings,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._now = now_fn

    def allow(self, source_type: str, region_key: str) -> RateLimitDecision:
        for attempt in range(1, self._settings.max_conflict_retries + 1):
            try:
                with self._session_factory() as session, session.begin():
                    now = self._now()
                    repository = RateLimitRepository(session)
                    row = repository.get_or_create(
                        source_type=source_type,
                        source_key=region_key,
                        default_requests_per_second=self._settings.default_requests_per_second,
                    )
                    decision = evaluate_rate_limit(
                        requests_per_second=row.requests_per_second,
                        last_request_at=as_utc(row.last_request_at),
                        is_throttled=row.is_throttled,
                        throttled_until=as_utc(row.throttled_until),
                        now=now,
                    )
                    if decision.allowed:
                        row.last_request_at = now
                    elif row.id is not None:
                        repository.increment_throttled(row_id=row.id)
                return decision
            except (StaleDataError, IntegrityError) as exc:
                log_event(
                    logger,
                    logging.DEBUG,
                    "rate_limit_conflict",
                    source_type=source_type,
                    region_key=region_key,
                    attempt=attempt,
                    error=str(exc),
                )
            except SQLAlchemyError as exc:
                return self._fail_closed(source_type, region_key, exc)

        # Every retry lost the race, so another consumer holds this slot.
        return RateLimitDecision(
            allowed=False,
            wait_ms=math.ceil(min_delay_ms(self._settings.default_requests_per_second)),
        )

    def record_request(self, source_type: str, region_key: str, duration_ms: int) -> None:
        for attempt in range(1, self._settings.max_conflict_retries + 1):
            try:
                with self._session_factory() as session, session.begin():
                    now = self._now()
                    row = RateLimitRepository(session).get_or_create(
                        source_type=source_type,
                        source_key=region_key,
                        default_requests_per_second=self._settings.default_requests_per_second,
                    )
                    self._count_request(row, duration_ms=duration_ms, now=now)
                return
            except (StaleDataError, IntegrityError):
                continue
            except SQLAlchemyError as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "rate_limit_record_failed",
                    source_type=source_type,
                    region_key=region_key,
                    error=str(exc),
                )
                return
        log_event(
            logger,
            logging.WARNING,
            "rate_limit_record_conflicts_exhausted",
            source_type=source_type,
            region_key=region_key,
        )

    def configure(self, source_type: str, region_key: str, *, requests_per_second: float) -> None:
        min_delay_ms(requests_per_second)
        with self._session_factory() as session, session.begin():
            row = RateLimitRepository(session).get_or_create(
                source_type=source_type,
                source_key=region_key,
                default_requests_per_second=requests_per_second,
            )
            row.requests_per_second = requests_per_second

    def throttle(self, source_type: str, region_key: str, *, until: datetime | None) -> None:
        with self._session_factory() as session, session.begin():
            row = RateLimitRepository(session).get_or_create(
                source_type=source_type,
                source_key=region_key,
                default_requests_per_second=self._settings.default_requests_per_second,
            )
            row.is_throttled = until is not None
            row.throttled_until = until

    def snapshots(self) -> list[RateLimitSnapshot]:
        now = self._now()
        with self._session_factory() as session:
            rows = RateLimitRepository(session).list_all()
            return [self._snapshot(row, now=now) for row in rows]

    def _fail_closed(
        self,
        source_type: str,
        region_key: str,
        exc: SQLAlchemyError,
    ) -> RateLimitDecision:
        log_event(
            logger,
            logging.ERROR,
            "rate_limit_store_unavailable",
            source_type=source_type,
            region_key=region_key,
            wait_ms=self._settings.fail_closed_wait_ms,
            error=str(exc),
        )
        return RateLimitDecision(allowed=False, wait_ms=self._settings.fail_closed_wait_ms)

    @staticmethod
    def _count_request(row: RateLimit, *, duration_ms: int, now: datetime) -> None:
        for name, length in WINDOW_LENGTHS:
            count, started_at = advance_window(
                getattr(row, f"{name}_count") or 0,
                as_utc(getattr(row, f"{name}_window_started_at")),
                now=now,
                length_seconds=length,
            )
            setattr(row, f"{name}_count", count)
            setattr(row, f"{name}_window_started_at", started_at)
        row.total_requests = (row.total_requests or 0) + 1
        row.last_request_duration_ms = duration_ms
        row.average_request_duration_ms = running_average(
            row.average_request_duration_ms, duration_ms, row.total_requests
        )

    @staticmethod
    def _snapshot(row: RateLimit, *, now: datetime) -> RateLimitSnapshot:
        counts = {
            f"{name}_count": current_window_count(
                getattr(row, f"{name}_count") or 0,
                as_utc(getattr(row, f"{name}_window_started_at")),
                now=now,
                length_seconds=length,
            )
            for name, length in WINDOW_LENGTHS
        }
        return RateLimitSnapshot(
            source_type=row.source_type,
            region_key=row.source_key,
            requests_per_second=row.requests_per_second,
            is_throttled=row.is_throttled,
            throttled_until=as_utc(row.throttled_until),
            last_request_at=as_utc(row.last_request_at),
            total_requests=row.total_requests,
            total_throttled=row.total_throttled,
            average_request_duration_ms=row.average_request_duration_ms,
            **counts,
        )
