"""
Structured logging helpers for scrape task consumption.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

from app.domain.scrape_task import ScrapeTask


def configure_logging() -> None:
    """
    Configure root logging once for an API or CLI process.
    """

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def task_fields(task: ScrapeTask, *, attempt: int | None = None) -> dict[str, Any]:
    """
    Context every task-level log line carries.
    """

    fields: dict[str, Any] = {
        "region_key": task.region_key,
        "source_type": task.source_type,
        "profession": task.profession,
    }
    if attempt is not None:
        fields["attempt"] = attempt
    return fields


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    **fields: Any,
) -> None:
    """
    Emit one structured log line as compact JSON.
    """

    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, **fields}
    logger.log(level, json.dumps(payload, default=str, sort_keys=True))
