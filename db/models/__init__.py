"""
Model package exports.

Import all SQLAlchemy models here so metadata registration and Alembic
autogeneration work without extra imports.
"""

from db.models.dead_letter_entry import DeadLetterEntry
from db.models.queue_message_log import QueueMessageLog, QueueMessageLogStatus
from db.models.rate_limit import RateLimit
from db.models.raw_business_record import RawBusinessRecord, RawBusinessRecordStatus
from db.models.scrape_queue_message import ScrapeQueueMessage
from db.models.scrape_task_state import ScrapeTaskState, ScrapeTaskStatus

__all__ = [
    "RateLimit",
    "ScrapeTaskState",
    "ScrapeTaskStatus",
    "RawBusinessRecord",
    "RawBusinessRecordStatus",
    "DeadLetterEntry",
    "QueueMessageLog",
    "QueueMessageLogStatus",
    "ScrapeQueueMessage",
]
