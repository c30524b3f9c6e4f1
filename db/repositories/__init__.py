"""
Repository layer exports.
"""

from db.repositories.dead_letter_repository import DeadLetterRepository
from db.repositories.errors import (
    DeadLetterNotFoundError,
    RepositoryError,
    UnsupportedDialectError,
)
from db.repositories.processing_log_repository import ProcessingLogRepository
from db.repositories.queue_message_repository import QueueMessageRepository
from db.repositories.rate_limit_repository import RateLimitRepository
from db.repositories.raw_record_repository import RawRecordRepository
from db.repositories.task_state_repository import TaskStateRepository

__all__ = [
    "RateLimitRepository",
    "TaskStateRepository",
    "RawRecordRepository",
    "DeadLetterRepository",
    "ProcessingLogRepository",
    "QueueMessageRepository",
    "RepositoryError",
    "UnsupportedDialectError",
    "DeadLetterNotFoundError",
]
