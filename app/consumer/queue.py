"""
Queue substrate for scrape tasks.

Delivery is at-least-once: a received message stays invisible for the
visibility timeout and reappears if it is neither acked nor retried.
``QueueMessage.attempts`` counts deliveries, starting at 1.
"""

from __future__ import annotations

import logging
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.consumer.errors import QueueError
from app.consumer.logging_utils import log_event, task_fields
from app.domain.scrape_task import QueueMessage, ScrapeTask
from db.base import as_utc, utc_now
from db.repositories.queue_message_repository import QueueMessageRepository

logger = logging.getLogger(__name__)


def new_message_id() -> str:
    return uuid.uuid4().hex


class ScrapeQueue(ABC):
    def __init__(
        self,
        *,
        queue_name: str,
        visibility_timeout_seconds: int,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.queue_name = queue_name
        self._visibility_timeout = timedelta(seconds=max(1, visibility_timeout_seconds))
        self._now = now_fn

    @abstractmethod
    def enqueue(self, task: ScrapeTask, *, delay_seconds: int = 0) -> QueueMessage:
        """Publish a task; it becomes deliverable after ``delay_seconds``."""

    @abstractmethod
    def receive_batch(self, max_messages: int) -> list[QueueMessage]:
        """Lease up to ``max_messages`` deliverable messages."""

    @abstractmethod
    def ack(self, message: QueueMessage) -> None:
        """Remove a processed message. Acking twice is a no-op."""

    @abstractmethod
    def retry(
        self,
        message: QueueMessage,
        *,
        delay_seconds: int,
        count_attempt: bool = True,
    ) -> None:
        """
        Release a message for redelivery after ``delay_seconds``.

        With ``count_attempt=False`` the delivery is refunded, so a deferral
        does not move the message closer to the attempt ceiling.
        """

    @abstractmethod
    def depth(self) -> int:
        """Messages currently held by the queue, leased or not."""


@dataclass
class _QueuedItem:
    message_id: str
    task: ScrapeTask
    attempts: int
    visible_at: datetime
    leased_until: datetime | None = None


class InMemoryScrapeQueue(ScrapeQueue):
    def __init__(
        self,
        *,
        queue_name: str = "scrape-queue",
        visibility_timeout_seconds: int = 600,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(
            queue_name=queue_name,
            visibility_timeout_seconds=visibility_timeout_seconds,
            now_fn=now_fn,
        )
        self._items: dict[str, _QueuedItem] = {}
        self._lock = threading.Lock()

    def enqueue(self, task: ScrapeTask, *, delay_seconds: int = 0) -> QueueMessage:
        message_id = new_message_id()
        with self._lock:
            self._items[message_id] = _QueuedItem(
                message_id=message_id,
                task=task,
                attempts=0,
                visible_at=self._now() + timedelta(seconds=max(0, delay_seconds)),
            )
        return QueueMessage(message_id=message_id, task=task, attempts=0)

    def receive_batch(self, max_messages: int) -> list[QueueMessage]:
        received: list[QueueMessage] = []
        with self._lock:
            now = self._now()
            deliverable = sorted(
                (
                    item
                    for item in self._items.values()
                    if item.visible_at <= now
                    and (item.leased_until is None or item.leased_until <= now)
                ),
                key=lambda item: (item.task.priority, item.visible_at),
            )
            for item in deliverable[: max(0, max_messages)]:
                item.attempts += 1
                item.leased_until = now + self._visibility_timeout
                received.append(
                    QueueMessage(message_id=item.message_id, task=item.task, attempts=item.attempts)
                )
        return received

    def ack(self, message: QueueMessage) -> None:
        with self._lock:
            self._items.pop(message.message_id, None)

    def retry(
        self,
        message: QueueMessage,
        *,
        delay_seconds: int,
        count_attempt: bool = True,
    ) -> None:
        with self._lock:
            item = self._items.get(message.message_id)
            if item is None:
                raise QueueError(f"Message {message.message_id} is no longer queued.")
            if not count_attempt:
                item.attempts = max(0, item.attempts - 1)
            item.visible_at = self._now() + timedelta(seconds=max(0, delay_seconds))
            item.leased_until = None

    def depth(self) -> int:
        with self._lock:
            return len(self._items)


class SQLAlchemyScrapeQueue(ScrapeQueue):
    """
    Queue stored in ``scrape_queue_messages``; safe for several consumers on
    PostgreSQL through ``FOR UPDATE SKIP LOCKED`` leasing.
    """

    def __init__(
        self,
        *,
        session_factory: sessionmaker[Session],
        queue_name: str,
        visibility_timeout_seconds: int,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(
            queue_name=queue_name,
            visibility_timeout_seconds=visibility_timeout_seconds,
            now_fn=now_fn,
        )
        self._session_factory = session_factory

    def enqueue(self, task: ScrapeTask, *, delay_seconds: int = 0) -> QueueMessage:
        message_id = new_message_id()
        now = self._now()
        try:
            with self._session_factory() as session, session.begin():
                QueueMessageRepository(session).add(
                    {
                        "message_id": message_id,
                        "queue_name": self.queue_name,
                        "payload": task.to_payload(),
                        "priority": task.priority,
                        "attempts": 0,
                        "visible_at": now + timedelta(seconds=max(0, delay_seconds)),
                        "leased_until": None,
                        "enqueued_at": now,
                    }
                )
        except SQLAlchemyError as exc:
            raise QueueError(f"Failed to enqueue task: {exc}") from exc
        return QueueMessage(message_id=message_id, task=task, attempts=0)

    def receive_batch(self, max_messages: int) -> list[QueueMessage]:
        if max_messages <= 0:
            return []
        now = self._now()
        received: list[QueueMessage] = []
        try:
            with self._session_factory() as session, session.begin():
                rows = QueueMessageRepository(session).lease_visible(
                    queue_name=self.queue_name,
                    now=now,
                    leased_until=now + self._visibility_timeout,
                    limit=max_messages,
                )
                for row in rows:
                    try:
                        task = ScrapeTask.from_payload(dict(row.payload or {}))
                    except ValueError as exc:
                        # Unparseable payloads can never succeed; drop them loudly.
                        log_event(
                            logger,
                            logging.ERROR,
                            "queue_message_discarded",
                            message_id=row.message_id,
                            payload=row.payload,
                            error=str(exc),
                        )
                        session.delete(row)
                        continue
                    received.append(
                        QueueMessage(message_id=row.message_id, task=task, attempts=row.attempts)
                    )
        except SQLAlchemyError as exc:
            raise QueueError(f"Failed to receive from {self.queue_name}: {exc}") from exc
        return received

    def ack(self, message: QueueMessage) -> None:
        try:
            with self._session_factory() as session, session.begin():
                deleted = QueueMessageRepository(session).delete(
                    queue_name=self.queue_name,
                    message_id=message.message_id,
                )
        except SQLAlchemyError as exc:
            raise QueueError(f"Failed to ack {message.message_id}: {exc}") from exc
        if not deleted:
            log_event(
                logger,
                logging.INFO,
                "queue_ack_missing",
                message_id=message.message_id,
                **task_fields(message.task, attempt=message.attempts),
            )

    def retry(
        self,
        message: QueueMessage,
        *,
        delay_seconds: int,
        count_attempt: bool = True,
    ) -> None:
        visible_at = self._now() + timedelta(seconds=max(0, delay_seconds))
        try:
            with self._session_factory() as session, session.begin():
                updated = QueueMessageRepository(session).reschedule(
                    queue_name=self.queue_name,
                    message_id=message.message_id,
                    visible_at=visible_at,
                    refund_attempt=not count_attempt,
                )
        except SQLAlchemyError as exc:
            raise QueueError(f"Failed to retry {message.message_id}: {exc}") from exc
        if not updated:
            raise QueueError(f"Message {message.message_id} is no longer queued.")
        log_event(
            logger,
            logging.DEBUG,
            "queue_message_rescheduled",
            message_id=message.message_id,
            visible_at=as_utc(visible_at),
            **task_fields(message.task, attempt=message.attempts),
        )

    def depth(self) -> int:
        with self._session_factory() as session:
            return QueueMessageRepository(session).count(queue_name=self.queue_name)
