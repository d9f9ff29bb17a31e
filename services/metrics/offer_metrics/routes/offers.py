"""Offer metrics endpoints.

GET  /v1/offers                    - Enriched offers, assignments, per-operator metrics, layout hints
POST /v1/offers/refresh            - Full refresh (catalog + pipeline + cache write)
GET  /v1/offers/{offer_id}/layout  - Row height hint for one offer

Routers are thin: call services for business logic.
"""

import logging

from fastapi import APIRouter, Path

from offer_metrics.schemas import (
    AssignmentOut,
    LayoutResponse,
    OfferMetricOut,
    OffersResponse,
    OperatorMetricOut,
    RefreshResponse,
    StageStateOut,
)
from offer_metrics.services.metrics_service import get_metrics_service

router = APIRouter()
logger = logging.getLogger("uvicorn.error")


@router.get("", response_model=OffersResponse)
async def list_offers() -> OffersResponse:
    """Flat ordered offers, assignments by offer id and stage readiness.

    The first call in a process restores the session cache or, on a miss,
    runs a full refresh.
    """
    service = get_metrics_service()
    if not service.loaded:
        await service.load()

    view = service.view()
    return OffersResponse(
        offers=[OfferMetricOut.from_model(o) for o in view.offers],
        assignments={
            offer_id: [
                AssignmentOut.from_model(a, a.id in view.pending, view.statuses.get(a.id))
                for a in items
            ]
            for offer_id, items in view.assignments.items()
        },
        operator_metrics={
            offer_id: {
                operator_id: OperatorMetricOut.from_model(metric)
                for operator_id, metric in by_operator.items()
            }
            for offer_id, by_operator in view.operator_metrics.items()
        },
        needs_more_height=view.needs_more_height,
        stages=[StageStateOut.from_model(s) for s in view.stages],
        cached_at_ms=view.cached_at_ms,
    )


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_offers() -> RefreshResponse:
    """Manual "refresh all".

    Raises:
        EndpointUnavailableError: If no analytics endpoint could be reached (502).
    """
    service = get_metrics_service()
    run = await service.refresh_all()
    if run.error is not None:
        raise run.error
    return RefreshResponse(success=run.ok, summary=run.get_summary())


@router.get("/{offer_id}/layout", response_model=LayoutResponse)
async def offer_layout(
    offer_id: str = Path(..., description="Catalog offer id"),
) -> LayoutResponse:
    """Whether the offer row must grow to show its assignments."""
    service = get_metrics_service()
    return LayoutResponse(needs_more_height=service.row_needs_more_height(offer_id))
