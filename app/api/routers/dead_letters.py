"""
app/api/routers/dead_letters.py

Operator review of dead-lettered scrape tasks.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.consumer.dead_letter import DeadLetterRecord
from app.consumer.errors import QueueError
from app.schemas.consumer import (
    DeadLetterResponse,
    RequeueDeadLetterRequest,
    RequeueDeadLetterResponse,
    ResolveDeadLetterRequest,
)
from app.services.consumer_service import ConsumerService, get_consumer_service
from db.base import utc_now
from db.repositories.errors import DeadLetterNotFoundError

router = APIRouter(prefix="/dead-letters", tags=["dead-letters"])


def _to_response(record: DeadLetterRecord) -> DeadLetterResponse:
    return DeadLetterResponse.model_validate(record).model_copy(
        update={"hours_since_failure": record.failure_age_hours(utc_now())}
    )


@router.get("", response_model=list[DeadLetterResponse])
def list_dead_letters(
    limit: int = Query(default=50, ge=1, le=500),
    service: ConsumerService = Depends(get_consumer_service),
) -> list[DeadLetterResponse]:
    """
    Unresolved dead-letter entries, newest failure first.
    """

    return [_to_response(record) for record in service.list_dead_letters(limit=limit)]


@router.post("/{entry_id}/resolve", response_model=DeadLetterResponse)
def resolve_dead_letter(
    entry_id: int,
    payload: ResolveDeadLetterRequest,
    service: ConsumerService = Depends(get_consumer_service),
) -> DeadLetterResponse:
    try:
        record = service.resolve_dead_letter(
            entry_id,
            resolved_by=payload.resolved_by,
            notes=payload.notes,
        )
    except DeadLetterNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _to_response(record)


@router.post(
    "/{entry_id}/requeue",
    response_model=RequeueDeadLetterResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def requeue_dead_letter(
    entry_id: int,
    payload: RequeueDeadLetterRequest | None = None,
    service: ConsumerService = Depends(get_consumer_service),
) -> RequeueDeadLetterResponse:
    """
    Enqueue a fresh task from the entry's snapshot and resolve the entry.
    """

    resolved_by = payload.resolved_by if payload is not None else "operator"
    try:
        message = service.requeue_dead_letter(entry_id, resolved_by=resolved_by)
    except DeadLetterNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (QueueError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return RequeueDeadLetterResponse(
        entry_id=entry_id,
        message_id=message.message_id,
        region_key=message.task.region_key,
        source_type=message.task.source_type,
        profession=message.task.profession,
    )
