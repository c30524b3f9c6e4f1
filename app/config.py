"""
app/config.py

Application-level configuration helpers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from db.config import load_env_files


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading app settings.
    """

    load_env_files()


def _get_bool_env(name: str, default: bool) -> bool:
    """
    Read a boolean from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    """
    Read a string from environment variables with fallback.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


@dataclass(frozen=True)
class ConsumerSettings:
    """
    Runtime settings for the batch dispatcher and queue worker.
    """

    queue_name: str = "progeodata-scrape-queue"
    worker_version: str = "1.0.0"
    max_concurrent_scrapes: int = 5
    batch_size: int = 10
    poll_interval_seconds: float = 5.0
    visibility_timeout_seconds: int = 600


@dataclass(frozen=True)
class RetryPolicySettings:
    """
    Retry, backoff and dead-letter policy.

    Backoff is ``backoff_base_seconds * 2**min(failures, backoff_max_exponent)``,
    so the defaults give 1 hour growing to a 32 hour ceiling.
    """

    max_attempts: int = 3
    backoff_base_seconds: int = 3600
    backoff_max_exponent: int = 5
    max_retry_delay_seconds: int = 43200
    stale_processing_seconds: int = 300


@dataclass(frozen=True)
class RateLimitSettings:
    """
    Pacing behavior shared by every rate-limited key.
    """

    default_requests_per_second: float = 1.0
    max_checks: int = 5
    max_inline_wait_ms: int = 10_000
    fail_closed_wait_ms: int = 1000
    max_conflict_retries: int = 3


@dataclass(frozen=True)
class ScraperServiceSettings:
    """
    External scraper service endpoint settings.
    """

    base_url: str = "http://localhost:8787"
    timeout_seconds: float = 30.0
    result_limit: int = 50


@dataclass(frozen=True)
class SchedulerSettings:
    enabled: bool = True
    reconcile_interval_seconds: int = 300


@lru_cache(maxsize=1)
def get_consumer_settings() -> ConsumerSettings:
    """
    Return cached consumer settings from environment variables.
    """

    return ConsumerSettings(
        queue_name=_get_str_env("CONSUMER_QUEUE_NAME", "progeodata-scrape-queue"),
        worker_version=_get_str_env("CONSUMER_VERSION", "1.0.0"),
        max_concurrent_scrapes=max(1, _get_int_env("CONSUMER_MAX_CONCURRENT_SCRAPES", 5)),
        batch_size=max(1, _get_int_env("CONSUMER_BATCH_SIZE", 10)),
        poll_interval_seconds=max(0.1, _get_float_env("CONSUMER_POLL_INTERVAL_SECONDS", 5.0)),
        visibility_timeout_seconds=max(
            1, _get_int_env("CONSUMER_VISIBILITY_TIMEOUT_SECONDS", 600)
        ),
    )


@lru_cache(maxsize=1)
def get_retry_policy_settings() -> RetryPolicySettings:
    """
    Return cached retry policy settings from environment variables.
    """

    return RetryPolicySettings(
        max_attempts=max(1, _get_int_env("CONSUMER_MAX_ATTEMPTS", 3)),
        backoff_base_seconds=max(1, _get_int_env("CONSUMER_BACKOFF_BASE_SECONDS", 3600)),
        backoff_max_exponent=max(0, _get_int_env("CONSUMER_BACKOFF_MAX_EXPONENT", 5)),
        max_retry_delay_seconds=max(0, _get_int_env("CONSUMER_MAX_RETRY_DELAY_SECONDS", 43200)),
        stale_processing_seconds=max(
            1, _get_int_env("CONSUMER_STALE_PROCESSING_SECONDS", 300)
        ),
    )


@lru_cache(maxsize=1)
def get_rate_limit_settings() -> RateLimitSettings:
    """
    Return cached rate limiter settings from environment variables.
    """

    return RateLimitSettings(
        default_requests_per_second=max(0.01, _get_float_env("RATE_LIMIT_DEFAULT_RPS", 1.0)),
        max_checks=max(1, _get_int_env("RATE_LIMIT_MAX_CHECKS", 5)),
        max_inline_wait_ms=max(0, _get_int_env("RATE_LIMIT_MAX_INLINE_WAIT_MS", 10_000)),
        fail_closed_wait_ms=max(1, _get_int_env("RATE_LIMIT_FAIL_CLOSED_WAIT_MS", 1000)),
        max_conflict_retries=max(1, _get_int_env("RATE_LIMIT_MAX_CONFLICT_RETRIES", 3)),
    )


@lru_cache(maxsize=1)
def get_scraper_service_settings() -> ScraperServiceSettings:
    """
    Return cached scraper service settings from environment variables.
    """

    return ScraperServiceSettings(
        base_url=_get_str_env("SCRAPER_SERVICE_URL", "http://localhost:8787").rstrip("/"),
        timeout_seconds=max(1.0, _get_float_env("SCRAPER_TIMEOUT_SECONDS", 30.0)),
        result_limit=max(1, _get_int_env("SCRAPER_RESULT_LIMIT", 50)),
    )


@lru_cache(maxsize=1)
def get_scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings(
        enabled=_get_bool_env("SCHEDULER_ENABLED", True),
        reconcile_interval_seconds=max(
            10, _get_int_env("SCHEDULER_RECONCILE_INTERVAL_SECONDS", 300)
        ),
    )
