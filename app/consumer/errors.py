"""
Exception taxonomy for scrape task consumption.
"""

from __future__ import annotations


class ConsumerError(Exception):
    """Base exception for consumer failures."""


class RateLimitDenied(ConsumerError):
    """
    Raised when the rate limiter keeps denying a key.

    ``deferred`` marks a wait too long to sleep through inline: the task is
    handed back to the queue without counting a failure. Otherwise the local
    re-check budget was spent and the task fails.
    """

    def __init__(self, message: str, *, wait_ms: int, deferred: bool = False) -> None:
        super().__init__(message)
        self.wait_ms = wait_ms
        self.deferred = deferred


class InvocationError(ConsumerError):
    """Raised when the external scrape call fails, times out or returns garbage."""


class PersistenceError(ConsumerError):
    """Raised when scraped records could not be stored."""


class TerminalError(ConsumerError):
    """Raised when a task reached the attempt ceiling and was dead-lettered."""

    def __init__(self, message: str, *, attempts: int, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class TaskAlreadySettledError(ConsumerError):
    """Raised when a redelivered task already reached a terminal state."""


class InvalidTransitionError(ConsumerError):
    """Raised when a task state change is not allowed by the state machine."""


class QueueError(ConsumerError):
    """Raised when the queue substrate cannot enqueue, ack or retry a message."""
