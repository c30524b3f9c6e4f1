"""
app/services/consumer_service.py

Wiring for the scrape task consumer and the operator surfaces built on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from app.config import (
    ConsumerSettings,
    RateLimitSettings,
    RetryPolicySettings,
    ScraperServiceSettings,
    get_consumer_settings,
    get_rate_limit_settings,
    get_retry_policy_settings,
    get_scraper_service_settings,
)
from app.consumer.dead_letter import DeadLetterRecord, SQLAlchemyDeadLetterSink
from app.consumer.dispatcher import BatchDispatcher, ConsumerDependencies
from app.consumer.invoker import HTTPScrapeInvoker, ScrapeInvoker
from app.consumer.observability import ProcessingLogEntry, QueueHealth, SQLAlchemyProcessingLog
from app.consumer.queue import SQLAlchemyScrapeQueue
from app.consumer.rate_limiter import RateLimitSnapshot, SQLAlchemyRateLimiter
from app.consumer.seeder import SeedSummary, TaskSeeder
from app.consumer.storage import SQLAlchemyResultStore
from app.consumer.task_state import SQLAlchemyTaskStateTracker, TaskStateSnapshot
from app.consumer.worker import BatchSummary, ConsumerWorker
from app.domain.scrape_task import QueueMessage, ScrapeTask
from db.base import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumerStats:
    generated_at: datetime
    queue_depth: int
    unresolved_dead_letters: int
    recent_activity: list[ProcessingLogEntry]
    queue_health: list[QueueHealth]
    task_health: list[dict[str, Any]]
    rate_limits: list[RateLimitSnapshot]


class ConsumerService:
    """
    Builds every consumer component on one session factory.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        consumer_settings: ConsumerSettings,
        retry_policy: RetryPolicySettings,
        rate_limit_settings: RateLimitSettings,
        scraper_settings: ScraperServiceSettings,
        invoker: ScrapeInvoker | None = None,
    ) -> None:
        self.settings = consumer_settings
        self.queue = SQLAlchemyScrapeQueue(
            session_factory=session_factory,
            queue_name=consumer_settings.queue_name,
            visibility_timeout_seconds=consumer_settings.visibility_timeout_seconds,
        )
        self.rate_limiter = SQLAlchemyRateLimiter(
            session_factory=session_factory,
            settings=rate_limit_settings,
        )
        self.task_tracker = SQLAlchemyTaskStateTracker(
            session_factory=session_factory,
            policy=retry_policy,
            max_conflict_retries=rate_limit_settings.max_conflict_retries,
        )
        self.dead_letter_sink = SQLAlchemyDeadLetterSink(
            session_factory=session_factory,
            worker_version=consumer_settings.worker_version,
        )
        self.processing_log = SQLAlchemyProcessingLog(session_factory=session_factory)
        dependencies = ConsumerDependencies(
            rate_limiter=self.rate_limiter,
            invoker=invoker or HTTPScrapeInvoker(settings=scraper_settings),
            result_store=SQLAlchemyResultStore(session_factory=session_factory),
            task_tracker=self.task_tracker,
            dead_letter_sink=self.dead_letter_sink,
            processing_log=self.processing_log,
        )
        self.dispatcher = BatchDispatcher(
            dependencies=dependencies,
            consumer_settings=consumer_settings,
            retry_policy=retry_policy,
            rate_limit_settings=rate_limit_settings,
        )
        self.worker = ConsumerWorker(
            queue=self.queue,
            dispatcher=self.dispatcher,
            batch_size=consumer_settings.batch_size,
            poll_interval_seconds=consumer_settings.poll_interval_seconds,
        )
        self.seeder = TaskSeeder(queue=self.queue, tracker=self.task_tracker)

    def run_batch(self) -> BatchSummary:
        return self.worker.run_once()

    def seed(self, tasks: list[ScrapeTask], *, force: bool = False) -> SeedSummary:
        return self.seeder.seed(tasks, force=force)

    def reconcile_stale_tasks(self) -> list[TaskStateSnapshot]:
        return self.task_tracker.reconcile_stale()

    def stats(self, *, activity_limit: int = 100, window_hours: int = 24) -> ConsumerStats:
        return ConsumerStats(
            generated_at=utc_now(),
            queue_depth=self.queue.depth(),
            unresolved_dead_letters=self.dead_letter_sink.count_unresolved(),
            recent_activity=self.processing_log.recent_activity(limit=activity_limit),
            queue_health=self.processing_log.queue_health(window_hours=window_hours),
            task_health=self.task_tracker.queue_health(),
            rate_limits=self.rate_limiter.snapshots(),
        )

    def list_task_states(
        self,
        *,
        status: str | None = None,
        source_type: str | None = None,
        limit: int = 100,
    ) -> list[TaskStateSnapshot]:
        return self.task_tracker.list_states(status=status, source_type=source_type, limit=limit)

    def list_dead_letters(self, *, limit: int = 50) -> list[DeadLetterRecord]:
        return self.dead_letter_sink.list_unresolved(limit=limit)

    def resolve_dead_letter(
        self,
        entry_id: int,
        *,
        resolved_by: str,
        notes: str | None = None,
    ) -> DeadLetterRecord:
        return self.dead_letter_sink.resolve(entry_id, resolved_by=resolved_by, notes=notes)

    def requeue_dead_letter(self, entry_id: int, *, resolved_by: str) -> QueueMessage:
        return self.dead_letter_sink.resurrect(
            entry_id,
            self.queue,
            resolved_by=resolved_by,
            tracker=self.task_tracker,
        )


@lru_cache(maxsize=1)
def get_consumer_service() -> ConsumerService:
    """
    Build and cache the consumer service on the shared database engine.
    """

    from db.session import get_session_factory

    return ConsumerService(
        session_factory=get_session_factory(),
        consumer_settings=get_consumer_settings(),
        retry_policy=get_retry_policy_settings(),
        rate_limit_settings=get_rate_limit_settings(),
        scraper_settings=get_scraper_service_settings(),
    )
