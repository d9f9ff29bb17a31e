"""Pydantic schemas for API request/response validation."""

from offer_metrics.schemas.common import ErrorDetail, ErrorResponse
from offer_metrics.schemas.offers import (
    AssignmentOut,
    EventResponse,
    LayoutResponse,
    OfferMetricOut,
    OffersResponse,
    OperatorMetricOut,
    RefreshResponse,
    StageStateOut,
    StagesResponse,
)

__all__ = [
    "AssignmentOut",
    "ErrorDetail",
    "ErrorResponse",
    "EventResponse",
    "LayoutResponse",
    "OfferMetricOut",
    "OffersResponse",
    "OperatorMetricOut",
    "RefreshResponse",
    "StageStateOut",
    "StagesResponse",
]
