"""
Batch dispatcher: runs one delivered batch of scrape tasks with bounded
concurrency and turns every task into an ack or retry directive.

Per task::

    mark processing -> rate-limit gate -> scrape -> record request
        -> store records -> mark completed
    any failure -> mark failed -> dead-letter + ack at the attempt ceiling,
                                  requeue + retry otherwise

Every outcome is written to the processing log before the task's unit of
work ends. One task's exception never reaches its siblings.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from app.config import ConsumerSettings, RateLimitSettings, RetryPolicySettings
from app.consumer.dead_letter import DeadLetterSink
from app.consumer.errors import (
    ConsumerError,
    RateLimitDenied,
    TaskAlreadySettledError,
    TerminalError,
)
from app.consumer.invoker import ScrapeInvoker
from app.consumer.logging_utils import log_event, task_fields
from app.consumer.observability import ProcessingLog, ProcessingLogEntry
from app.consumer.rate_limiter import RateLimiter
from app.consumer.storage import ResultStore
from app.consumer.task_state import TaskStateSnapshot, TaskStateTracker
from app.domain.scrape_task import MessageOutcome, OutcomeAction, QueueMessage, ScrapeTask
from db.base import utc_now
from db.models.queue_message_log import QueueMessageLogStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConsumerDependencies:
    rate_limiter: RateLimiter
    invoker: ScrapeInvoker
    result_store: ResultStore
    task_tracker: TaskStateTracker
    dead_letter_sink: DeadLetterSink
    processing_log: ProcessingLog


@dataclass
class _Attempt:
    """Mutable bookkeeping for one message while it is being processed."""

    message: QueueMessage
    received_at: datetime
    started: float
    result_count: int = 0
    stored_count: int = 0
    provenance: str | None = None
    scrape_duration_ms: int = 0

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class BatchDispatcher:
    def __init__(
        self,
        *,
        dependencies: ConsumerDependencies,
        consumer_settings: ConsumerSettings,
        retry_policy: RetryPolicySettings,
        rate_limit_settings: RateLimitSettings,
        sleep_fn: Callable[[float], None] = time.sleep,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._deps = dependencies
        self._consumer = consumer_settings
        self._policy = retry_policy
        self._rate_limits = rate_limit_settings
        self._sleep = sleep_fn
        self._now = now_fn

    def process_batch(self, messages: Sequence[QueueMessage]) -> list[MessageOutcome]:
        """
        Process a batch and return one outcome per message, in input order.
        """

        if not messages:
            return []
        max_workers = max(1, min(self._consumer.max_concurrent_scrapes, len(messages)))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="scrape") as pool:
            outcomes = list(pool.map(self._process_safely, messages))

        log_event(
            logger,
            logging.INFO,
            "batch_processed",
            size=len(messages),
            acked=sum(1 for outcome in outcomes if outcome.action == OutcomeAction.ACK),
            retried=sum(1 for outcome in outcomes if outcome.action == OutcomeAction.RETRY),
        )
        return outcomes

    def _process_safely(self, message: QueueMessage) -> MessageOutcome:
        attempt = _Attempt(message=message, received_at=self._now(), started=time.monotonic())
        try:
            return self._process(attempt)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error while processing message %s", message.message_id)
            return self._fail(attempt, exc)

    def _process(self, attempt: _Attempt) -> MessageOutcome:
        task = attempt.message.task
        try:
            self._deps.task_tracker.mark_processing(task)
        except TaskAlreadySettledError as exc:
            return self._finish(
                attempt,
                action=OutcomeAction.ACK,
                status=QueueMessageLogStatus.DUPLICATE,
                error=str(exc),
            )

        try:
            self._acquire_slot(task)
        except RateLimitDenied as exc:
            if exc.deferred:
                return self._defer(attempt, exc)
            return self._fail(attempt, exc)

        try:
            self._scrape_and_store(attempt)
        except (ConsumerError, SQLAlchemyError) as exc:
            return self._fail(attempt, exc)

        self._deps.task_tracker.mark_completed(
            task,
            result_count=attempt.result_count,
            duration_ms=attempt.scrape_duration_ms,
        )
        return self._finish(attempt, action=OutcomeAction.ACK, status=QueueMessageLogStatus.COMPLETED)

    def _acquire_slot(self, task: ScrapeTask) -> None:
        """
        Wait inline for the rate limiter, up to ``max_checks`` decisions.

        Raises RateLimitDenied with ``deferred=True`` when the limiter asks
        for a longer wait than ``max_inline_wait_ms``.
        """

        wait_ms = 0
        for check in range(1, self._rate_limits.max_checks + 1):
            decision = self._deps.rate_limiter.allow(task.source_type, task.region_key)
            if decision.allowed:
                return
            wait_ms = decision.wait_ms
            if wait_ms > self._rate_limits.max_inline_wait_ms:
                raise RateLimitDenied(
                    f"Rate limited for {wait_ms}ms on {task.source_type}/{task.region_key}.",
                    wait_ms=wait_ms,
                    deferred=True,
                )
            log_event(
                logger,
                logging.DEBUG,
                "rate_limit_wait",
                wait_ms=wait_ms,
                check=check,
                **task_fields(task),
            )
            if check < self._rate_limits.max_checks:
                self._sleep(wait_ms / 1000.0)
        raise RateLimitDenied(
            f"Rate limit still denied after {self._rate_limits.max_checks} checks "
            f"on {task.source_type}/{task.region_key}.",
            wait_ms=wait_ms,
        )

    def _scrape_and_store(self, attempt: _Attempt) -> None:
        task = attempt.message.task
        started = time.monotonic()
        result = self._deps.invoker.scrape(task)
        attempt.scrape_duration_ms = int((time.monotonic() - started) * 1000)
        attempt.provenance = result.provenance
        self._deps.rate_limiter.record_request(
            task.source_type,
            task.region_key,
            attempt.scrape_duration_ms,
        )
        if result.error is not None:
            raise result.error

        attempt.result_count = len(result.records)
        attempt.stored_count = self._deps.result_store.upsert(result.records, task)
        log_event(
            logger,
            logging.INFO,
            "scrape_task_completed",
            result_count=attempt.result_count,
            stored_count=attempt.stored_count,
            provenance=result.provenance,
            duration_ms=attempt.scrape_duration_ms,
            **task_fields(task, attempt=attempt.message.attempts),
        )

    def _defer(self, attempt: _Attempt, exc: RateLimitDenied) -> MessageOutcome:
        task = attempt.message.task
        self._deps.task_tracker.requeue(task)
        delay_seconds = min(
            max(1, math.ceil(exc.wait_ms / 1000.0)),
            self._policy.max_retry_delay_seconds,
        )
        log_event(
            logger,
            logging.INFO,
            "scrape_task_deferred",
            wait_ms=exc.wait_ms,
            delay_seconds=delay_seconds,
            **task_fields(task, attempt=attempt.message.attempts),
        )
        return self._finish(
            attempt,
            action=OutcomeAction.RETRY,
            status=QueueMessageLogStatus.DEFERRED,
            delay_seconds=delay_seconds,
            error=str(exc),
        )

    def _fail(self, attempt: _Attempt, exc: BaseException) -> MessageOutcome:
        message = attempt.message
        task = message.task
        error = str(exc) or type(exc).__name__
        log_event(
            logger,
            logging.ERROR,
            "scrape_task_failed",
            message_id=message.message_id,
            error=error,
            error_type=type(exc).__name__,
            **task_fields(task, attempt=message.attempts),
        )

        snapshot: TaskStateSnapshot | None = None
        try:
            snapshot = self._deps.task_tracker.mark_failed(
                task,
                error=error,
                duration_ms=attempt.scrape_duration_ms or attempt.elapsed_ms(),
            )
        except (ConsumerError, SQLAlchemyError) as follow_up:
            self._log_state_write_failed(message, "mark_failed", follow_up)

        # The attempt ceiling is decided by the delivery count alone.
        if message.attempts >= self._policy.max_attempts:
            return self._dead_letter(attempt, exc, error)

        if snapshot is not None:
            try:
                self._deps.task_tracker.requeue(task)
            except (ConsumerError, SQLAlchemyError) as follow_up:
                self._log_state_write_failed(message, "requeue", follow_up)

        return self._finish(
            attempt,
            action=OutcomeAction.RETRY,
            status=QueueMessageLogStatus.RETRIED,
            delay_seconds=self._retry_delay(snapshot),
            error=error,
        )

    def _dead_letter(self, attempt: _Attempt, exc: BaseException, error: str) -> MessageOutcome:
        message = attempt.message
        terminal = TerminalError(
            f"Giving up after {message.attempts} attempts: {error}",
            attempts=message.attempts,
            cause=exc,
        )
        try:
            self._deps.dead_letter_sink.quarantine(message, terminal, message.attempts)
        except (ConsumerError, SQLAlchemyError) as follow_up:
            # Without a dead-letter entry the message stays on the queue.
            self._log_state_write_failed(message, "quarantine", follow_up)
            return self._finish(
                attempt,
                action=OutcomeAction.RETRY,
                status=QueueMessageLogStatus.FAILED,
                delay_seconds=self._policy.backoff_base_seconds,
                error=f"{error}; {follow_up}",
            )

        try:
            self._deps.task_tracker.mark_dead_lettered(message.task)
        except (ConsumerError, SQLAlchemyError) as follow_up:
            self._log_state_write_failed(message, "mark_dead_lettered", follow_up)
        return self._finish(
            attempt,
            action=OutcomeAction.ACK,
            status=QueueMessageLogStatus.DEAD_LETTERED,
            error=error,
        )

    def _log_state_write_failed(
        self,
        message: QueueMessage,
        operation: str,
        error: BaseException,
    ) -> None:
        log_event(
            logger,
            logging.ERROR,
            "failure_handling_failed",
            message_id=message.message_id,
            operation=operation,
            error=str(error),
            **task_fields(message.task, attempt=message.attempts),
        )

    def _retry_delay(self, snapshot: TaskStateSnapshot | None) -> int:
        if snapshot is None or snapshot.next_retry_at is None:
            return self._policy.backoff_base_seconds
        remaining = (snapshot.next_retry_at - self._now()).total_seconds()
        return int(min(max(1, math.ceil(remaining)), self._policy.max_retry_delay_seconds))

    def _finish(
        self,
        attempt: _Attempt,
        *,
        action: str,
        status: str,
        delay_seconds: int = 0,
        error: str | None = None,
    ) -> MessageOutcome:
        message = attempt.message
        task = message.task
        entry = ProcessingLogEntry(
            message_id=message.message_id,
            queue_name=self._consumer.queue_name,
            region_key=task.region_key,
            source_type=task.source_type,
            profession=task.profession,
            status=status,
            attempt_number=message.attempts,
            received_at=attempt.received_at,
            completed_at=self._now(),
            processing_duration_ms=attempt.elapsed_ms(),
            result_count=attempt.result_count,
            stored_count=attempt.stored_count,
            provenance=attempt.provenance,
            error_message=error,
            worker_version=self._consumer.worker_version,
        )
        try:
            self._deps.processing_log.record(entry)
        except ConsumerError as exc:
            log_event(
                logger,
                logging.ERROR,
                "processing_log_write_failed",
                message_id=message.message_id,
                status=status,
                error=str(exc),
            )
        return MessageOutcome(
            message_id=message.message_id,
            action=action,
            status=status,
            delay_seconds=delay_seconds,
            error=error,
            result_count=attempt.result_count,
            stored_count=attempt.stored_count,
        )
