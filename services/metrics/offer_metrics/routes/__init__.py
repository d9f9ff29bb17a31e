"""API routes."""

from fastapi import APIRouter

from offer_metrics.routes import events, offers, pipeline

api_router = APIRouter()

# Offer metrics (display layer)
api_router.include_router(offers.router, prefix="/v1/offers", tags=["offers"])

# Stage readiness flags
api_router.include_router(pipeline.router, prefix="/v1/pipeline", tags=["pipeline"])

# Change feed (assignment create/update/delete)
api_router.include_router(events.router, prefix="/v1/events", tags=["events"])
