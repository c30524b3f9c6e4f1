"""
app/domain/scrape_task.py

Domain models for scrape task consumption.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class Provenance:
    LIVE = "live"
    CACHE = "cache"
    MOCK = "mock"

    ALL = frozenset({LIVE, CACHE, MOCK})


class OutcomeAction:
    ACK = "ack"
    RETRY = "retry"


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        normalized = text[:-1] + "+00:00" if text.endswith("Z") else text
        parsed = datetime.fromisoformat(normalized)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ScrapeTask:
    """
    Queue payload for one geo/profession scrape. Immutable once enqueued.
    """

    region_key: str
    source_type: str
    profession: str
    priority: int = 5
    scheduled_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def postal_code(self) -> str:
        return self.region_key.split("-", 1)[0]

    @property
    def state(self) -> str:
        parts = self.region_key.split("-", 1)
        return parts[1] if len(parts) == 2 else ""

    def to_payload(self) -> dict[str, Any]:
        return {
            "region_key": self.region_key,
            "source_type": self.source_type,
            "profession": self.profession,
            "priority": self.priority,
            "scheduled_at": self.scheduled_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ScrapeTask":
        """
        Build a task from a queue payload.

        Accepts the legacy ``zip_code``/``state`` message shape as well as
        ``region_key``.
        """

        region_key = payload.get("region_key")
        if not region_key:
            zip_code = str(payload.get("zip_code") or "").strip()
            state = str(payload.get("state") or "").strip().upper()
            if not zip_code or not state:
                raise ValueError("Task payload requires region_key or zip_code + state.")
            region_key = f"{zip_code}-{state}"

        source_type = str(payload.get("source_type") or "").strip()
        profession = str(payload.get("profession") or "").strip()
        if not source_type:
            raise ValueError("Task payload requires source_type.")
        if not profession:
            raise ValueError("Task payload requires profession.")

        raw_scheduled = payload.get("scheduled_at")
        scheduled_at = (
            _parse_datetime(raw_scheduled)
            if raw_scheduled
            else datetime.now(timezone.utc)
        )
        return cls(
            region_key=str(region_key).strip(),
            source_type=source_type,
            profession=profession,
            priority=int(payload.get("priority", 5)),
            scheduled_at=scheduled_at,
        )


@dataclass(frozen=True)
class QueueMessage:
    """
    One delivery of a task. ``attempts`` is 1 on first delivery.
    """

    message_id: str
    task: ScrapeTask
    attempts: int = 1


@dataclass(frozen=True)
class RawRecord:
    """
    One scraped professional record.
    """

    source: str
    source_record_id: str
    name: str
    state: str
    city: str | None = None
    postal_code: str | None = None
    phone: str | None = None
    email: str | None = None
    license_status: str | None = None
    category: str | None = None
    raw_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScrapeResult:
    """
    Outcome of one invoker call. ``error`` is None on success, including
    successful calls that found nothing.
    """

    records: list[RawRecord]
    provenance: str
    error: Exception | None = None
    total: int = 0
    scraped_at: datetime | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class MessageOutcome:
    """
    Directive for the queue substrate after one message was processed.
    """

    message_id: str
    action: str
    status: str
    delay_seconds: int = 0
    error: str | None = None
    result_count: int = 0
    stored_count: int = 0
