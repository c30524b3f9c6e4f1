"""
Scrape invoker: the single call into the external scraping service.

The invoker never retries; retry policy lives with the task state tracker and
the dispatcher.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import requests

from app.config import ScraperServiceSettings
from app.consumer.errors import InvocationError
from app.consumer.logging_utils import log_event, task_fields
from app.domain.scrape_task import Provenance, RawRecord, ScrapeResult, ScrapeTask

logger = logging.getLogger(__name__)

# Payload errors with these severities describe an empty-but-valid result.
NON_FAILING_SEVERITIES = {"info", "warning"}

_PROVENANCE_ALIASES = {
    "no_data": Provenance.LIVE,
}

_CHUNK_SIZE = 64 * 1024


class _DeadlineExceeded(Exception):
    pass


class ScrapeInvoker(ABC):
    """
    ``scrape(task)`` always returns a ScrapeResult; failures are carried in
    ``ScrapeResult.error`` rather than raised.
    """

    @abstractmethod
    def scrape(self, task: ScrapeTask) -> ScrapeResult:
        """
        Fetch records for one task.
        """


def normalize_provenance(raw: Any) -> str:
    value = str(raw or "").strip().lower()
    value = _PROVENANCE_ALIASES.get(value, value)
    if value not in Provenance.ALL:
        raise InvocationError(f"Unknown result provenance {raw!r}.")
    return value


def parse_raw_record(item: Any, *, task: ScrapeTask) -> RawRecord:
    """
    Map one scraper result item to a RawRecord keyed by the task's source type.
    """

    if not isinstance(item, dict):
        raise InvocationError("Result item is not an object.")
    source_record_id = str(item.get("license_number") or item.get("source_id") or "").strip()
    name = str(item.get("name") or "").strip()
    if not source_record_id or not name:
        raise InvocationError("Result item is missing license_number or name.")

    return RawRecord(
        source=task.source_type,
        source_record_id=source_record_id,
        name=name,
        state=str(item.get("state") or task.state).strip().upper(),
        city=item.get("city") or None,
        postal_code=task.postal_code or None,
        phone=item.get("phone") or None,
        email=item.get("email") or None,
        license_status=item.get("license_status") or None,
        category=task.profession,
        raw_data=dict(item),
    )


def parse_scrape_payload(payload: Any, *, task: ScrapeTask) -> ScrapeResult:
    """
    Validate a scraper response body and convert it into a ScrapeResult.
    """

    if not isinstance(payload, dict):
        raise InvocationError("Scraper response is not a JSON object.")

    error = payload.get("error")
    if error:
        if isinstance(error, dict):
            severity = str(error.get("severity") or "error").lower()
            message = str(error.get("message") or error.get("code") or "scraper error")
        else:
            severity = "error"
            message = str(error)
        if severity not in NON_FAILING_SEVERITIES:
            raise InvocationError(f"Scraper reported error: {message}")

    results = payload.get("results")
    if not isinstance(results, list):
        raise InvocationError("Scraper response has no results list.")

    records: list[RawRecord] = []
    for index, item in enumerate(results):
        try:
            records.append(parse_raw_record(item, task=task))
        except InvocationError as exc:
            log_event(
                logger,
                logging.WARNING,
                "scrape_result_item_skipped",
                index=index,
                error=str(exc),
                **task_fields(task),
            )
    provenance = normalize_provenance(payload.get("source"))

    scraped_at: datetime | None = None
    raw_scraped_at = payload.get("scraped_at")
    if isinstance(raw_scraped_at, str) and raw_scraped_at:
        normalized = raw_scraped_at[:-1] + "+00:00" if raw_scraped_at.endswith("Z") else raw_scraped_at
        try:
            scraped_at = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise InvocationError(f"Invalid scraped_at {raw_scraped_at!r}.") from exc
        if scraped_at.tzinfo is None:
            scraped_at = scraped_at.replace(tzinfo=timezone.utc)

    total = payload.get("total")
    return ScrapeResult(
        records=records,
        provenance=provenance,
        total=int(total) if isinstance(total, int) else len(records),
        scraped_at=scraped_at,
    )


class HTTPScrapeInvoker(ScrapeInvoker):
    """
    Calls ``POST {base_url}/scrape`` on the scraper service with a hard timeout.

    ``timeout_seconds`` bounds the whole call. requests only bounds each
    connect and socket read, so the body is streamed and the total elapsed
    time is checked between chunks.
    """

    def __init__(
        self,
        *,
        settings: ScraperServiceSettings,
        session: requests.Session | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._session = session or requests.Session()
        self._url = f"{settings.base_url}/scrape"
        self._monotonic = monotonic

    def scrape(self, task: ScrapeTask) -> ScrapeResult:
        started = self._monotonic()
        deadline = started + self._settings.timeout_seconds
        body = {
            "region_key": task.region_key,
            "source_type": task.source_type,
            "profession": task.profession,
            "state": task.state,
            "zip": task.postal_code,
            "limit": self._settings.result_limit,
        }
        try:
            response = self._session.post(
                self._url,
                json=body,
                timeout=self._settings.timeout_seconds,
                stream=True,
            )
            try:
                content = self._read_body(response, deadline)
            finally:
                response.close()
        except requests.Timeout as exc:
            return self._failure(task, self._timeout_error(), cause=exc)
        except _DeadlineExceeded:
            return self._failure(task, self._timeout_error())
        except requests.RequestException as exc:
            return self._failure(task, InvocationError(f"Scraper transport failure: {exc}"), cause=exc)

        if not 200 <= response.status_code < 300:
            detail = content[:500].decode("utf-8", errors="replace")
            return self._failure(
                task,
                InvocationError(f"Scraper returned {response.status_code}: {detail}"),
            )

        try:
            payload = json.loads(content)
        except ValueError as exc:
            return self._failure(task, InvocationError("Scraper response was not valid JSON."), cause=exc)

        try:
            result = parse_scrape_payload(payload, task=task)
        except InvocationError as exc:
            return self._failure(task, exc)

        log_event(
            logger,
            logging.INFO,
            "scrape_completed",
            duration_ms=int((self._monotonic() - started) * 1000),
            records=len(result.records),
            provenance=result.provenance,
            **task_fields(task),
        )
        return result

    def _read_body(self, response: requests.Response, deadline: float) -> bytes:
        chunks: list[bytes] = []
        for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
            if self._monotonic() > deadline:
                raise _DeadlineExceeded()
            if chunk:
                chunks.append(chunk)
        return b"".join(chunks)

    def _timeout_error(self) -> InvocationError:
        return InvocationError(f"Scraper timed out after {self._settings.timeout_seconds:.0f}s.")

    @staticmethod
    def _failure(
        task: ScrapeTask,
        error: InvocationError,
        *,
        cause: BaseException | None = None,
    ) -> ScrapeResult:
        if cause is not None:
            error.__cause__ = cause
        log_event(
            logger,
            logging.WARNING,
            "scrape_invocation_failed",
            error=str(error),
            **task_fields(task),
        )
        return ScrapeResult(records=[], provenance=Provenance.LIVE, error=error)
