"""
app/api/routers/stats.py

Queue activity, health and task state endpoints.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.schemas.consumer import (
    ProcessingActivityResponse,
    QueueHealthResponse,
    RateLimitStatusResponse,
    StatsResponse,
    TaskStateResponse,
)
from app.services.consumer_service import ConsumerService, get_consumer_service
from db.base import utc_now

router = APIRouter(tags=["stats"])


@router.get("/stats", response_model=StatsResponse)
def get_stats(
    limit: int = Query(default=100, ge=1, le=500, description="Recent activity rows"),
    window_hours: int = Query(default=24, ge=1, le=720),
    service: ConsumerService = Depends(get_consumer_service),
) -> StatsResponse:
    """
    Recent queue activity, per-source health, task state totals and rate limits.
    """

    stats = service.stats(activity_limit=limit, window_hours=window_hours)
    return StatsResponse(
        generated_at=stats.generated_at,
        queue_depth=stats.queue_depth,
        unresolved_dead_letters=stats.unresolved_dead_letters,
        recent_activity=[
            ProcessingActivityResponse.model_validate(entry) for entry in stats.recent_activity
        ],
        queue_health=[QueueHealthResponse.model_validate(row) for row in stats.queue_health],
        task_health=stats.task_health,
        rate_limits=[RateLimitStatusResponse.model_validate(row) for row in stats.rate_limits],
    )


@router.get("/task-states", response_model=list[TaskStateResponse])
def list_task_states(
    status: str | None = Query(default=None),
    source_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    service: ConsumerService = Depends(get_consumer_service),
) -> list[TaskStateResponse]:
    now = utc_now()
    return [
        TaskStateResponse.model_validate(snapshot).model_copy(
            update={"hours_since_failure": snapshot.failure_age_hours(now)}
        )
        for snapshot in service.list_task_states(status=status, source_type=source_type, limit=limit)
    ]
