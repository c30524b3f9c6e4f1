"""
Dialect-specific INSERT constructs for upsert and insert-or-ignore statements.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from db.repositories.errors import UnsupportedDialectError


def dialect_insert(session: Session) -> Any:
    """
    Return the ``insert`` construct supporting ``ON CONFLICT`` for the bound dialect.
    """

    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise UnsupportedDialectError(f"ON CONFLICT is not supported for dialect {dialect!r}.")
