"""Transient rows produced from the analytics feed."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date


@dataclass(frozen=True)
class ForecastSample:
    """Leads for one article on one day (forecaster working set only)."""

    article: str
    date: date
    leads: float


@dataclass(frozen=True)
class SourceRow:
    """Leads/cost for one article, tracker source and day."""

    article: str
    source_id: str
    date: date
    leads: float
    cost: float
