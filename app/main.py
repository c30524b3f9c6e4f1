from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI

from app.config import get_consumer_settings, get_scheduler_settings
from app.consumer.logging_utils import configure_logging
from app.schemas.consumer import HealthResponse
from db.base import utc_now

logger = logging.getLogger(__name__)


def _validate_env() -> None:
    """
    Validate required environment variables at startup.

    Raises RuntimeError listing every missing or invalid variable so the
    operator can fix all problems in one restart cycle.
    """

    from db.config import DATABASE_URL_VARIABLES, has_database_url

    errors: list[str] = []

    if not has_database_url():
        errors.append(
            "No database URL configured. Set one of: " + ", ".join(DATABASE_URL_VARIABLES) + "."
        )

    scraper_url = os.getenv("SCRAPER_SERVICE_URL")
    if scraper_url is not None and not scraper_url.strip().startswith(("http://", "https://")):
        errors.append(
            f"SCRAPER_SERVICE_URL='{scraper_url}' is not valid. It must be an http(s) URL."
        )

    if errors:
        raise RuntimeError(
            "Startup validation failed. Missing or invalid environment variables:\n"
            + "\n".join(f"  - {e}" for e in errors)
        )


def _check_db() -> None:
    """Round-trip SELECT 1 through the shared session factory."""
    from sqlalchemy import text

    from db.session import SessionLocal

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError("Consumer database unavailable.") from exc


def _missing_consumer_tables() -> list[str]:
    from sqlalchemy import inspect as sa_inspect

    import db.models  # noqa: F401 (registers all ORM models on Base.metadata)
    from db.base import Base
    from db.session import get_engine

    present = set(sa_inspect(get_engine()).get_table_names())
    return sorted(set(Base.metadata.tables) - present)


def _check_schema() -> None:
    """
    Refuse to boot unless the queue, state, limiter, result and dead-letter
    tables all exist. Migrations are never applied here.
    """
    missing = _missing_consumer_tables()
    if not missing:
        return

    logger.critical(
        "Consumer schema incomplete, %d table(s) absent: %s. Run 'alembic upgrade head' and restart.",
        len(missing),
        ", ".join(missing),
    )
    raise RuntimeError(
        f"Consumer schema incomplete: missing {', '.join(missing)}. Run migrations and restart."
    )


@asynccontextmanager
async def _lifespan(application: FastAPI) -> AsyncIterator[None]:
    _check_db()
    _check_schema()
    logger.info("Consumer database reachable and schema complete")

    if not get_scheduler_settings().enabled:
        logger.info("Scheduler disabled by SCHEDULER_ENABLED; queue polling is external")
        yield
        return

    from app.scheduler.jobs import build_scheduler

    scheduler = build_scheduler()
    scheduler.start()
    logger.info(
        "Scheduler started: %s",
        ", ".join(job.id for job in scheduler.get_jobs()),
    )
    try:
        yield
    finally:
        # Let an in-flight batch finish so no message is left half-processed.
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """

    _validate_env()
    configure_logging()

    version = get_consumer_settings().worker_version
    application = FastAPI(
        title="Scrape Queue Consumer API",
        version=version,
        lifespan=_lifespan,
    )

    from app.api.routers import dead_letters_router, stats_router

    application.include_router(stats_router)
    application.include_router(dead_letters_router)

    @application.get("/health", response_model=HealthResponse)
    def healthcheck() -> HealthResponse:
        return HealthResponse(status="healthy", version=version, timestamp=utc_now())

    return application


app = create_app()
