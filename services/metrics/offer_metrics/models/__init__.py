"""Domain models.

Records held in memory by the pipeline and reconciler:
- offer metrics: one derived row per catalog article
- operator assignments: operator <-> offer links scoped by tracker sources
- samples: transient per-day rows fetched from the analytics endpoint
"""

from offer_metrics.models.assignment import (
    ChangeEvent,
    ChangeKind,
    Operator,
    OperatorAssignment,
    OperatorStatus,
    OperatorStatusCode,
    PerOperatorMetric,
)
from offer_metrics.models.offer import (
    LOOKBACK_WINDOWS,
    STAGE_FIELDS,
    ZONE_ORDER,
    DaysRemainingStatus,
    MonthlyRating,
    OfferMetric,
    Zone,
    ZonePrices,
)
from offer_metrics.models.samples import ForecastSample, SourceRow

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "DaysRemainingStatus",
    "ForecastSample",
    "LOOKBACK_WINDOWS",
    "MonthlyRating",
    "OfferMetric",
    "Operator",
    "OperatorAssignment",
    "OperatorStatus",
    "OperatorStatusCode",
    "PerOperatorMetric",
    "STAGE_FIELDS",
    "SourceRow",
    "ZONE_ORDER",
    "Zone",
    "ZonePrices",
]
