"""
app/schemas package marker.
"""

from app.schemas.consumer import (
    DeadLetterResponse,
    HealthResponse,
    ProcessingActivityResponse,
    QueueHealthResponse,
    RateLimitStatusResponse,
    RequeueDeadLetterRequest,
    RequeueDeadLetterResponse,
    ResolveDeadLetterRequest,
    StatsResponse,
    TaskStateResponse,
)

__all__ = [
    "DeadLetterResponse",
    "HealthResponse",
    "ProcessingActivityResponse",
    "QueueHealthResponse",
    "RateLimitStatusResponse",
    "RequeueDeadLetterRequest",
    "RequeueDeadLetterResponse",
    "ResolveDeadLetterRequest",
    "StatsResponse",
    "TaskStateResponse",
]
