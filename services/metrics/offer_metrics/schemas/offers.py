"""Schemas for the offer metrics endpoints (/v1/offers, /v1/pipeline, /v1/events)."""

from datetime import date
from typing import Any

from pydantic import BaseModel, Field

from offer_metrics.models import OfferMetric, OperatorAssignment, OperatorStatus, PerOperatorMetric
from offer_metrics.services.pipeline import StageState


class ZonePricesOut(BaseModel):
    red: float | None = None
    pink: float | None = None
    gold: float | None = None
    green: float | None = None


class MonthlyRatingOut(BaseModel):
    year: int
    month: int
    rating: str
    cpl: float
    leads: float
    cost: float


class OfferMetricOut(BaseModel):
    """One enriched offer row."""

    offer_id: str = Field(alias="offerId")
    article: str
    offer_name: str = Field(alias="offerName", default="")
    actual_roi_percent: float | None = Field(alias="actualRoiPercent", default=None)
    stock_quantity: int | None = Field(alias="stockQuantity", default=None)
    category: str | None = None
    stock_modifications: list[str] = Field(alias="stockModifications", default_factory=list)
    sales_forecast_per_day: float | None = Field(alias="salesForecastPerDay", default=None)
    days_remaining: float | None = Field(alias="daysRemaining", default=None)
    days_remaining_status: str | None = Field(alias="daysRemainingStatus", default=None)
    zone_prices: ZonePricesOut = Field(alias="zonePrices")
    zone_thresholds: ZonePricesOut = Field(alias="zoneThresholds")
    roi_type: str | None = Field(alias="roiType", default=None)
    approve_percent: float | None = Field(alias="approvePercent", default=None)
    sold_percent: float | None = Field(alias="soldPercent", default=None)
    refusal_percent: float | None = Field(alias="refusalPercent", default=None)
    no_pickup_percent: float | None = Field(alias="noPickupPercent", default=None)
    current_zone: str | None = Field(alias="currentZone", default=None)
    leads_by_period: dict[int, float] = Field(alias="leadsByPeriod", default_factory=dict)
    cost_by_period: dict[int, float] = Field(alias="costByPeriod", default_factory=dict)
    cpl_by_period: dict[int, float] = Field(alias="cplByPeriod", default_factory=dict)
    rating: str | None = None
    rating_cpl: float | None = Field(alias="ratingCpl", default=None)
    rating_history: list[MonthlyRatingOut] = Field(alias="ratingHistory", default_factory=list)

    model_config = {"populate_by_name": True}

    @classmethod
    def from_model(cls, offer: OfferMetric) -> "OfferMetricOut":
        return cls.model_validate(offer.to_dict())


class OperatorStatusOut(BaseModel):
    status: str
    since: str | None = None
    message: str = ""

    @classmethod
    def from_model(cls, status: OperatorStatus) -> "OperatorStatusOut":
        return cls(**status.to_dict())


class AssignmentOut(BaseModel):
    id: str
    offer_id: str = Field(alias="offerId")
    operator_id: str = Field(alias="operatorId")
    source: str = ""
    source_ids: list[str] = Field(alias="sourceIds", default_factory=list)
    pending: bool = False
    status: OperatorStatusOut | None = None

    model_config = {"populate_by_name": True}

    @classmethod
    def from_model(
        cls, a: OperatorAssignment, pending: bool, status: OperatorStatus | None
    ) -> "AssignmentOut":
        return cls(
            id=a.id,
            offer_id=a.offer_id,
            operator_id=a.operator_id,
            source=a.source,
            source_ids=list(a.source_ids),
            pending=pending,
            status=OperatorStatusOut.from_model(status) if status else None,
        )


class OperatorMetricOut(BaseModel):
    """Leads/cost for one operator on one offer."""

    operator_id: str = Field(alias="operatorId")
    leads_by_period: dict[int, float] = Field(alias="leadsByPeriod", default_factory=dict)
    cost_by_period: dict[int, float] = Field(alias="costByPeriod", default_factory=dict)
    cpl_by_period: dict[int, float] = Field(alias="cplByPeriod", default_factory=dict)
    active_days_leads: float = Field(alias="activeDaysLeads", default=0.0)
    active_days_cost: float = Field(alias="activeDaysCost", default=0.0)
    active_days_cpl: float = Field(alias="activeDaysCpl", default=0.0)
    active_days: int = Field(alias="activeDays", default=0)
    consecutive_active_days: int = Field(alias="consecutiveActiveDays", default=0)
    last_active_date: date | None = Field(alias="lastActiveDate", default=None)

    model_config = {"populate_by_name": True}

    @classmethod
    def from_model(cls, metric: PerOperatorMetric) -> "OperatorMetricOut":
        return cls(
            operator_id=metric.operator_id,
            leads_by_period=metric.leads_by_period,
            cost_by_period=metric.cost_by_period,
            cpl_by_period=metric.cpl_by_period,
            active_days_leads=metric.active_days_leads,
            active_days_cost=metric.active_days_cost,
            active_days_cpl=metric.active_days_cpl,
            active_days=metric.active_days,
            consecutive_active_days=metric.consecutive_active_days,
            last_active_date=metric.last_active_date,
        )


class StageStateOut(BaseModel):
    name: str
    loading: bool
    ready: bool
    error: str | None = None
    progress: float | None = None

    @classmethod
    def from_model(cls, state: StageState) -> "StageStateOut":
        return cls(
            name=state.name,
            loading=state.loading,
            ready=state.ready,
            error=state.error,
            progress=state.progress,
        )


class OffersResponse(BaseModel):
    """Response payload for GET /v1/offers."""

    offers: list[OfferMetricOut]
    assignments: dict[str, list[AssignmentOut]]
    operator_metrics: dict[str, dict[str, OperatorMetricOut]] = Field(
        alias="operatorMetrics", default_factory=dict
    )
    needs_more_height: dict[str, bool] = Field(alias="needsMoreHeight")
    stages: list[StageStateOut]
    cached_at_ms: int | None = Field(alias="cachedAtMs", default=None)

    model_config = {"populate_by_name": True}


class RefreshResponse(BaseModel):
    """Response payload for POST /v1/offers/refresh."""

    success: bool
    summary: dict[str, Any]


class LayoutResponse(BaseModel):
    needs_more_height: bool = Field(alias="needsMoreHeight")

    model_config = {"populate_by_name": True}


class StagesResponse(BaseModel):
    stages: list[StageStateOut]


class EventResponse(BaseModel):
    """Response payload for POST /v1/events."""

    changed: bool
    topology_changed: bool = Field(alias="topologyChanged")
    scheduled_run: bool = Field(alias="scheduledRun")

    model_config = {"populate_by_name": True}
