"""
Consumer loop: receive a batch, dispatch it, apply each outcome to the queue.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from app.consumer.dispatcher import BatchDispatcher
from app.consumer.errors import QueueError
from app.consumer.logging_utils import log_event
from app.consumer.queue import ScrapeQueue
from app.domain.scrape_task import MessageOutcome, OutcomeAction, QueueMessage
from db.models.queue_message_log import QueueMessageLogStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchSummary:
    received: int
    acked: int
    retried: int
    queue_errors: int


class ConsumerWorker:
    def __init__(
        self,
        *,
        queue: ScrapeQueue,
        dispatcher: BatchDispatcher,
        batch_size: int,
        poll_interval_seconds: float,
    ) -> None:
        self._queue = queue
        self._dispatcher = dispatcher
        self._batch_size = max(1, batch_size)
        self._poll_interval = max(0.0, poll_interval_seconds)

    def run_once(self) -> BatchSummary:
        messages = self._queue.receive_batch(self._batch_size)
        if not messages:
            return BatchSummary(received=0, acked=0, retried=0, queue_errors=0)

        outcomes = self._dispatcher.process_batch(messages)
        acked = retried = queue_errors = 0
        for message, outcome in zip(messages, outcomes):
            try:
                self._apply(message, outcome)
            except QueueError as exc:
                # The lease expires and the message is redelivered.
                queue_errors += 1
                log_event(
                    logger,
                    logging.ERROR,
                    "queue_directive_failed",
                    message_id=message.message_id,
                    action=outcome.action,
                    error=str(exc),
                )
                continue
            if outcome.action == OutcomeAction.ACK:
                acked += 1
            else:
                retried += 1
        return BatchSummary(
            received=len(messages),
            acked=acked,
            retried=retried,
            queue_errors=queue_errors,
        )

    def run_forever(self, stop_event: threading.Event) -> None:
        log_event(
            logger,
            logging.INFO,
            "consumer_started",
            queue=self._queue.queue_name,
            batch_size=self._batch_size,
        )
        while not stop_event.is_set():
            try:
                summary = self.run_once()
            except QueueError as exc:
                log_event(logger, logging.ERROR, "consumer_poll_failed", error=str(exc))
                stop_event.wait(self._poll_interval)
                continue
            if summary.received == 0:
                stop_event.wait(self._poll_interval)
        log_event(logger, logging.INFO, "consumer_stopped", queue=self._queue.queue_name)

    def _apply(self, message: QueueMessage, outcome: MessageOutcome) -> None:
        if outcome.action == OutcomeAction.ACK:
            self._queue.ack(message)
            return
        self._queue.retry(
            message,
            delay_seconds=outcome.delay_seconds,
            count_attempt=outcome.status != QueueMessageLogStatus.DEFERRED,
        )
