"""Change-feed push endpoint.

POST /v1/events - one assignment change event (created / updated / deleted)

Delivery is at-least-once; duplicates and out-of-order events are absorbed
by the reconciler and answered with ``changed: false``.
"""

import logging
from typing import Any

from fastapi import APIRouter, Body, HTTPException

from offer_metrics.schemas import EventResponse
from offer_metrics.services.metrics_service import get_metrics_service

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


@router.post("", response_model=EventResponse)
async def push_event(payload: dict[str, Any] = Body(...)) -> EventResponse:
    """Apply one change event to the live tables.

    Raises:
        HTTPException 422: If the payload is not a recognizable change event.
    """
    service = get_metrics_service()
    try:
        outcome = service.handle_event(payload)
    except ValueError as e:
        logger.warning(f"Rejected change event: {e}")
        raise HTTPException(status_code=422, detail=str(e))

    return EventResponse(
        changed=outcome.changed,
        topology_changed=outcome.topology_changed,
        scheduled_run=outcome.run_task is not None,
    )
