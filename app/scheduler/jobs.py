"""
app/scheduler/jobs.py

APScheduler-based background jobs for the scrape queue consumer.

Schedule (interval, UTC)
--------------------------
  consumer_poll          : every CONSUMER_POLL_INTERVAL_SECONDS; one batch
                           per run, never overlapping
  reconcile_stale_tasks  : every SCHEDULER_RECONCILE_INTERVAL_SECONDS; forces
                           tasks stuck in processing to failed

Lifecycle
----------
Call ``build_scheduler()`` once to get a configured ``BackgroundScheduler``.
Start it on app boot; shut it down gracefully on app shutdown.
The scheduler is wired into FastAPI via the ``lifespan`` context in main.py.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from app.config import get_consumer_settings, get_scheduler_settings
from app.services.consumer_service import get_consumer_service

logger = logging.getLogger(__name__)


def run_consumer_poll() -> None:
    """
    Receive and process one batch from the scrape queue.
    """
    try:
        summary = get_consumer_service().run_batch()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Scheduler: consumer_poll failed: %s", exc)
        return

    if summary.received:
        logger.info(
            "Scheduler: consumer_poll received=%d acked=%d retried=%d queue_errors=%d",
            summary.received,
            summary.acked,
            summary.retried,
            summary.queue_errors,
        )


def run_reconcile_stale_tasks() -> None:
    """
    Fail tasks whose worker vanished mid-processing so they re-enter retry.
    """
    logger.info("Scheduler: reconcile_stale_tasks starting")
    try:
        reconciled = get_consumer_service().reconcile_stale_tasks()
    except Exception as exc:  # noqa: BLE001
        logger.warning("Scheduler: reconcile_stale_tasks failed: %s", exc)
        return
    logger.info("Scheduler: reconcile_stale_tasks complete reconciled=%d", len(reconciled))


def build_scheduler() -> BackgroundScheduler:
    """
    Build and register all periodic jobs.

    Returns a configured but *not yet started* ``BackgroundScheduler``.
    The caller must call ``.start()`` and ``.shutdown(wait=True)`` at the
    appropriate lifecycle points.
    """
    consumer_settings = get_consumer_settings()
    scheduler_settings = get_scheduler_settings()
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        run_consumer_poll,
        trigger="interval",
        seconds=consumer_settings.poll_interval_seconds,
        id="consumer_poll",
        name="Scrape queue consumer poll",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_reconcile_stale_tasks,
        trigger="interval",
        seconds=scheduler_settings.reconcile_interval_seconds,
        id="reconcile_stale_tasks",
        name="Stale processing task reconciliation",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        misfire_grace_time=scheduler_settings.reconcile_interval_seconds,
    )

    return scheduler
