"""
Repository for rate limit rows.
"""

from __future__ import annotations

from sqlalchemy import Select, select, update
from sqlalchemy.orm import Session

from db.models.rate_limit import DEFAULT_REQUESTS_PER_SECOND, RateLimit


class RateLimitRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, *, source_type: str, source_key: str) -> RateLimit | None:
        stmt: Select[tuple[RateLimit]] = select(RateLimit).where(
            RateLimit.source_type == source_type,
            RateLimit.source_key == source_key,
        )
        return self._session.scalars(stmt).first()

    def get_or_create(
        self,
        *,
        source_type: str,
        source_key: str,
        default_requests_per_second: float = DEFAULT_REQUESTS_PER_SECOND,
    ) -> RateLimit:
        """
        Return the row for a key, adding a default one to the session if missing.

        A concurrent creator surfaces as IntegrityError on flush/commit.
        """

        row = self.get(source_type=source_type, source_key=source_key)
        if row is not None:
            return row
        row = RateLimit(
            source_type=source_type,
            source_key=source_key,
            requests_per_second=default_requests_per_second,
            is_throttled=False,
            total_requests=0,
            total_throttled=0,
            second_count=0,
            minute_count=0,
            hour_count=0,
            day_count=0,
        )
        self._session.add(row)
        return row

    def increment_throttled(self, *, row_id: int) -> None:
        """
        Bump the denial counter without touching the row version.
        """

        table = RateLimit.__table__
        self._session.execute(
            update(table)
            .where(table.c.id == row_id)
            .values(total_throttled=table.c.total_throttled + 1)
        )

    def list_all(self) -> list[RateLimit]:
        stmt = select(RateLimit).order_by(RateLimit.source_type, RateLimit.source_key)
        return list(self._session.scalars(stmt).all())
