"""
Result store interface for scraped records.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from app.domain.scrape_task import RawRecord, ScrapeTask


class ResultStore(ABC):
    """
    Idempotent storage keyed by (source, source_record_id).
    """

    @abstractmethod
    def upsert(self, records: Sequence[RawRecord], task: ScrapeTask) -> int:
        """
        Persist records and return how many were actually written.

        Individual record failures are logged and skipped; only a total
        failure raises PersistenceError.
        """
