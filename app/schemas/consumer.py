"""
app/schemas/consumer.py

Response and request schemas for the consumer stats and dead-letter endpoints.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime


class ProcessingActivityResponse(BaseModel):
    model_config = {"from_attributes": True}

    message_id: str
    region_key: str
    source_type: str
    profession: str | None = None
    status: str
    attempt_number: int = Field(..., ge=0)
    received_at: datetime
    completed_at: datetime
    processing_duration_ms: int = Field(..., ge=0)
    result_count: int = Field(..., ge=0)
    stored_count: int = Field(..., ge=0)
    provenance: str | None = None
    error_message: str | None = None
    worker_version: str | None = None


class QueueHealthResponse(BaseModel):
    model_config = {"from_attributes": True}

    source_type: str
    processed: int
    completed: int
    failed: int
    retried: int
    dead_lettered: int
    deferred: int
    duplicate: int
    records_found: int
    records_stored: int
    avg_duration_ms: float | None = None


class RateLimitStatusResponse(BaseModel):
    model_config = {"from_attributes": True}

    source_type: str
    region_key: str
    requests_per_second: float
    is_throttled: bool
    throttled_until: datetime | None = None
    last_request_at: datetime | None = None
    second_count: int
    minute_count: int
    hour_count: int
    day_count: int
    total_requests: int
    total_throttled: int
    average_request_duration_ms: float | None = None


class StatsResponse(BaseModel):
    generated_at: datetime
    queue_depth: int = Field(..., ge=0)
    unresolved_dead_letters: int = Field(..., ge=0)
    recent_activity: list[ProcessingActivityResponse] = Field(default_factory=list)
    queue_health: list[QueueHealthResponse] = Field(default_factory=list)
    task_health: list[dict[str, Any]] = Field(default_factory=list)
    rate_limits: list[RateLimitStatusResponse] = Field(default_factory=list)


class TaskStateResponse(BaseModel):
    model_config = {"from_attributes": True}

    region_key: str
    source_type: str
    profession: str | None = None
    status: str
    priority: int
    total_attempts: int
    successful_scrapes: int
    failed_scrapes: int
    consecutive_failures: int
    last_error: str | None = None
    next_retry_at: datetime | None = None
    last_result_count: int
    total_records_found: int
    last_scrape_duration_ms: int | None = None
    queued_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_attempted_at: datetime | None = None
    hours_since_failure: float | None = None


class DeadLetterResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    message_id: str
    region_key: str
    source_type: str
    profession: str | None = None
    message_body: dict[str, Any]
    error_message: str | None = None
    retry_count: int
    failed_at: datetime
    original_scheduled_at: datetime | None = None
    worker_version: str | None = None
    resolved: bool
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution_notes: str | None = None
    hours_since_failure: float | None = None


class ResolveDeadLetterRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1, max_length=120)
    notes: str | None = None


class RequeueDeadLetterRequest(BaseModel):
    resolved_by: str = Field(default="operator", min_length=1, max_length=120)


class RequeueDeadLetterResponse(BaseModel):
    entry_id: int
    message_id: str
    region_key: str
    source_type: str
    profession: str
