"""
app/domain package marker.
"""

from app.domain.scrape_task import (
    MessageOutcome,
    OutcomeAction,
    Provenance,
    QueueMessage,
    RawRecord,
    ScrapeResult,
    ScrapeTask,
)

__all__ = [
    "MessageOutcome",
    "OutcomeAction",
    "Provenance",
    "QueueMessage",
    "RawRecord",
    "ScrapeResult",
    "ScrapeTask",
]
