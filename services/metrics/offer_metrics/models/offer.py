"""Offer metric model.

One row per catalog article. Rows are immutable: pipeline stages return
field deltas and the orchestrator swaps in a new record via
``dataclasses.replace``. Each stage owns a disjoint set of fields
(see ``STAGE_FIELDS``).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

# Fixed lookback windows (days) for leads / cost / CPL aggregation.
LOOKBACK_WINDOWS: tuple[int, ...] = (7, 14, 30, 60, 90)


class Zone(Enum):
    """Performance tier, ordered worst -> best."""

    SOS = "sos"  # below the worst zone threshold
    RED = "red"
    PINK = "pink"
    GOLD = "gold"
    GREEN = "green"


# Worst -> best (SOS excluded: it has no threshold of its own).
ZONE_ORDER: tuple[Zone, ...] = (Zone.RED, Zone.PINK, Zone.GOLD, Zone.GREEN)


class DaysRemainingStatus(Enum):
    """Why ``days_remaining`` has (or lacks) a value."""

    OK = "ok"
    INSUFFICIENT_HISTORY = "insufficient_history"
    DECLINING_TREND = "declining_trend"
    NO_STOCK = "no_stock"


@dataclass(frozen=True)
class ZonePrices:
    """Lead price per zone (null when that zone's threshold is missing)."""

    red: float | None = None
    pink: float | None = None
    gold: float | None = None
    green: float | None = None

    def get(self, zone: Zone) -> float | None:
        return getattr(self, zone.value, None)


@dataclass(frozen=True)
class MonthlyRating:
    """Rating snapshot for one calendar month."""

    year: int
    month: int
    rating: str
    cpl: float
    leads: float
    cost: float


@dataclass(frozen=True)
class OfferMetric:
    """Derived metrics for one catalog article."""

    offer_id: str
    article: str
    offer_name: str = ""
    actual_roi_percent: float | None = None

    # Stock stage
    stock_quantity: int | None = None
    category: str | None = None
    stock_modifications: tuple[str, ...] = ()

    # Zone stage
    zone_prices: ZonePrices = field(default_factory=ZonePrices)
    zone_thresholds: ZonePrices = field(default_factory=ZonePrices)
    roi_type: str | None = None
    approve_percent: float | None = None
    sold_percent: float | None = None
    refusal_percent: float | None = None
    no_pickup_percent: float | None = None
    current_zone: Zone | None = None

    # Forecast stage
    sales_forecast_per_day: float | None = None
    days_remaining: float | None = None
    days_remaining_status: DaysRemainingStatus | None = None

    # Leads stage
    leads_by_period: dict[int, float] = field(default_factory=dict)
    cost_by_period: dict[int, float] = field(default_factory=dict)
    cpl_by_period: dict[int, float] = field(default_factory=dict)
    rating: str | None = None
    rating_cpl: float | None = None
    rating_history: tuple[MonthlyRating, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly dict (enums by value, int period keys as str)."""
        data = asdict(self)
        data["current_zone"] = self.current_zone.value if self.current_zone else None
        data["days_remaining_status"] = (
            self.days_remaining_status.value if self.days_remaining_status else None
        )
        for key in ("leads_by_period", "cost_by_period", "cpl_by_period"):
            data[key] = {str(k): v for k, v in data[key].items()}
        data["stock_modifications"] = list(self.stock_modifications)
        data["rating_history"] = [asdict(m) for m in self.rating_history]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OfferMetric":
        """Rebuild from ``to_dict`` output. Raises on mis-shaped input."""
        zone = data.get("current_zone")
        status = data.get("days_remaining_status")
        return cls(
            offer_id=str(data["offer_id"]),
            article=str(data["article"]),
            offer_name=data.get("offer_name") or "",
            actual_roi_percent=data.get("actual_roi_percent"),
            stock_quantity=data.get("stock_quantity"),
            category=data.get("category"),
            stock_modifications=tuple(data.get("stock_modifications") or ()),
            zone_prices=ZonePrices(**(data.get("zone_prices") or {})),
            zone_thresholds=ZonePrices(**(data.get("zone_thresholds") or {})),
            roi_type=data.get("roi_type"),
            approve_percent=data.get("approve_percent"),
            sold_percent=data.get("sold_percent"),
            refusal_percent=data.get("refusal_percent"),
            no_pickup_percent=data.get("no_pickup_percent"),
            current_zone=Zone(zone) if zone else None,
            sales_forecast_per_day=data.get("sales_forecast_per_day"),
            days_remaining=data.get("days_remaining"),
            days_remaining_status=DaysRemainingStatus(status) if status else None,
            leads_by_period=_int_keys(data.get("leads_by_period")),
            cost_by_period=_int_keys(data.get("cost_by_period")),
            cpl_by_period=_int_keys(data.get("cpl_by_period")),
            rating=data.get("rating"),
            rating_cpl=data.get("rating_cpl"),
            rating_history=tuple(MonthlyRating(**m) for m in data.get("rating_history") or ()),
        )


def _int_keys(raw: dict[str, Any] | None) -> dict[int, float]:
    return {int(k): float(v) for k, v in (raw or {}).items()}


# Field ownership per pipeline stage. Stages may only write their own fields.
STAGE_FIELDS: dict[str, frozenset[str]] = {
    "stock": frozenset({"stock_quantity", "category", "stock_modifications"}),
    "zones": frozenset(
        {
            "zone_prices",
            "zone_thresholds",
            "roi_type",
            "approve_percent",
            "sold_percent",
            "refusal_percent",
            "no_pickup_percent",
        }
    ),
    "forecast": frozenset(
        {"sales_forecast_per_day", "days_remaining", "days_remaining_status"}
    ),
    "leads": frozenset(
        {
            "leads_by_period",
            "cost_by_period",
            "cpl_by_period",
            "rating",
            "rating_cpl",
            "rating_history",
        }
    ),
}
