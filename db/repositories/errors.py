"""
Repository-layer exceptions for consumer persistence.
"""

from __future__ import annotations


class RepositoryError(Exception):
    """Base exception for repository failures."""


class UnsupportedDialectError(RepositoryError):
    """Raised when a dialect-specific statement is requested on an unknown backend."""


class DeadLetterNotFoundError(RepositoryError):
    """Raised when a referenced dead-letter entry does not exist."""
