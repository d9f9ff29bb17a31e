"""Lead/cost aggregation, global and per operator.

Both views are sums over the same raw rows: one row per (article, tracker
source, day). The rows are fetched once per run and kept in ``SourceRowCache``
so that re-scoping an operator (its source ids changed) only re-sums cached
rows instead of going back to the analytics endpoint.

Rating: the 7-day CPL as a percentage of the base price (red zone price, or
the configured default) gives A (<=35%), B (<=65%), C (<=90%), D otherwise.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from offer_metrics.models import (
    LOOKBACK_WINDOWS,
    MonthlyRating,
    OfferMetric,
    OperatorAssignment,
    PerOperatorMetric,
    SourceRow,
)
from offer_metrics.services.forecast import parse_day
from offer_metrics.services.query_client import AnalyticsQueryClient, sql_in_list
from offer_metrics.settings import get_settings

logger = logging.getLogger("uvicorn.error")

RATING_WINDOW = 7
RATING_HISTORY_MONTHS = 3
FETCH_DAYS = max(LOOKBACK_WINDOWS)

# (fraction_done, is_complete)
ProgressCallback = Callable[[float, bool], None]


# =============================================================================
# Row cache
# =============================================================================


class SourceRowCache:
    """Raw per-source per-day rows keyed by article."""

    def __init__(self) -> None:
        self._rows: dict[str, tuple[SourceRow, ...]] = {}

    def __contains__(self, article: object) -> bool:
        return article in self._rows

    def __len__(self) -> int:
        return len(self._rows)

    def get(self, article: str) -> tuple[SourceRow, ...]:
        return self._rows.get(article, ())

    def replace(self, article: str, rows: Iterable[SourceRow]) -> None:
        self._rows[article] = tuple(rows)

    def discard(self, article: str) -> None:
        self._rows.pop(article, None)

    def clear(self) -> None:
        self._rows.clear()


# =============================================================================
# Aggregation
# =============================================================================


def _cpl(cost: float, leads: float) -> float:
    return cost / leads if leads > 0 else 0.0


def window_start(today: date, days: int) -> date:
    """First day of a ``days``-long window ending today (inclusive)."""
    return today - timedelta(days=days - 1)


def sum_windows(
    rows: Iterable[SourceRow], today: date, windows: Iterable[int] = LOOKBACK_WINDOWS
) -> tuple[dict[int, float], dict[int, float], dict[int, float]]:
    """Leads, cost and CPL per lookback window."""
    rows = list(rows)
    leads: dict[int, float] = {}
    cost: dict[int, float] = {}
    cpl: dict[int, float] = {}
    for days in windows:
        start = window_start(today, days)
        in_window = [r for r in rows if start <= r.date <= today]
        leads[days] = sum(r.leads for r in in_window)
        cost[days] = sum(r.cost for r in in_window)
        cpl[days] = _cpl(cost[days], leads[days])
    return leads, cost, cpl


def calculate_rating(cpl: float | None, base: float | None) -> str:
    """A/B/C/D from ``cpl`` as a share of ``base``; N/A on zero or missing input."""
    if not cpl or not base or math.isnan(cpl) or math.isnan(base):
        return "N/A"
    pct = cpl / base * 100
    if pct <= 35:
        return "A"
    if pct <= 65:
        return "B"
    if pct <= 90:
        return "C"
    return "D"


def previous_months(today: date, count: int = RATING_HISTORY_MONTHS) -> list[tuple[date, date]]:
    """(first_day, last_day) of the ``count`` calendar months before today's month."""
    months: list[tuple[date, date]] = []
    first_of_month = today.replace(day=1)
    for _ in range(count):
        last = first_of_month - timedelta(days=1)
        first_of_month = last.replace(day=1)
        months.append((first_of_month, last))
    return months


def rating_history(rows: Iterable[SourceRow], base: float | None, today: date) -> tuple[MonthlyRating, ...]:
    rows = list(rows)
    history = []
    for start, end in previous_months(today):
        in_month = [r for r in rows if start <= r.date <= end]
        leads = sum(r.leads for r in in_month)
        cost = sum(r.cost for r in in_month)
        cpl = _cpl(cost, leads)
        history.append(
            MonthlyRating(
                year=start.year,
                month=start.month,
                rating=calculate_rating(cpl, base),
                cpl=cpl,
                leads=leads,
                cost=cost,
            )
        )
    return tuple(history)


def global_metrics(
    rows: Iterable[SourceRow], base: float | None, today: date
) -> dict[str, Any]:
    """Leads-stage fields for one article."""
    rows = list(rows)
    leads, cost, cpl = sum_windows(rows, today)
    rating_cpl = cpl[RATING_WINDOW]
    return {
        "leads_by_period": leads,
        "cost_by_period": cost,
        "cpl_by_period": cpl,
        "rating": calculate_rating(rating_cpl, base),
        "rating_cpl": rating_cpl,
        "rating_history": rating_history(rows, base, today),
    }


def _daily_totals(rows: Iterable[SourceRow], source_ids: Iterable[str]) -> dict[date, tuple[float, float]]:
    wanted = set(source_ids)
    totals: dict[date, list[float]] = defaultdict(lambda: [0.0, 0.0])
    for r in rows:
        if r.source_id in wanted:
            totals[r.date][0] += r.leads
            totals[r.date][1] += r.cost
    return {d: (v[0], v[1]) for d, v in totals.items()}


def aggregate_active_days(
    rows: Iterable[SourceRow], source_ids: Iterable[str], days: int = 14
) -> tuple[float, float, float, int]:
    """(leads, cost, cpl, active_days) over the most recent ``days`` days with spend."""
    active = sorted(
        ((d, v) for d, v in _daily_totals(rows, source_ids).items() if v[1] > 0),
        key=lambda item: item[0],
        reverse=True,
    )[:days]
    leads = sum(v[0] for _, v in active)
    cost = sum(v[1] for _, v in active)
    return leads, cost, _cpl(cost, leads), len(active)


def consecutive_active_days(
    rows: Iterable[SourceRow], source_ids: Iterable[str], today: date, limit: int = 365
) -> int:
    """Days with spend counted back from today without a gap."""
    spend_days = {d for d, v in _daily_totals(rows, source_ids).items() if v[1] > 0}
    count = 0
    cur = today
    while count < limit and cur in spend_days:
        count += 1
        cur -= timedelta(days=1)
    return count


def last_active_date(rows: Iterable[SourceRow], source_ids: Iterable[str]) -> date | None:
    spend_days = [d for d, v in _daily_totals(rows, source_ids).items() if v[1] > 0]
    return max(spend_days) if spend_days else None


def operator_metric(
    article: str,
    operator_id: str,
    rows: Iterable[SourceRow],
    source_ids: Iterable[str],
    today: date,
    active_days: int = 14,
) -> PerOperatorMetric:
    """Per-operator metrics from cached rows filtered by ``source_ids``."""
    wanted = set(source_ids)
    scoped = [r for r in rows if r.source_id in wanted]
    leads, cost, cpl = sum_windows(scoped, today)
    ad_leads, ad_cost, ad_cpl, ad_days = aggregate_active_days(scoped, wanted, active_days)
    return PerOperatorMetric(
        article=article,
        operator_id=operator_id,
        leads_by_period=leads,
        cost_by_period=cost,
        cpl_by_period=cpl,
        active_days_leads=ad_leads,
        active_days_cost=ad_cost,
        active_days_cpl=ad_cpl,
        active_days=ad_days,
        consecutive_active_days=consecutive_active_days(scoped, wanted, today),
        last_active_date=last_active_date(scoped, wanted),
    )


def operator_sources(
    assignments: Iterable[OperatorAssignment],
) -> dict[tuple[str, str], set[str]]:
    """Union of source ids per (offer_id, operator_id)."""
    scopes: dict[tuple[str, str], set[str]] = defaultdict(set)
    for a in assignments:
        if a.archived:
            continue
        scopes[(a.offer_id, a.operator_id)].update(a.source_ids)
    return scopes


# =============================================================================
# Fetch
# =============================================================================


def fetch_start(today: date) -> date:
    """Earliest day needed: the 90-day window or the oldest rating month."""
    oldest_month = previous_months(today)[-1][0]
    return min(window_start(today, FETCH_DAYS), oldest_month)


def build_rows_query(start: date, end: date, tracker_ids: Iterable[str]) -> str:
    return f"""
        SELECT
            offer_id_tracker,
            DATE(adv_date) as adv_date,
            SUM(valid) as total_leads,
            SUM(cost) as total_cost,
            source_id_tracker
        FROM ads_collection
        WHERE adv_date BETWEEN '{start.isoformat()}' AND '{end.isoformat()}'
            AND offer_id_tracker IN ({sql_in_list(tracker_ids)})
        GROUP BY offer_id_tracker, DATE(adv_date), source_id_tracker
    """


class ProgressReporter:
    """Calls back only when crossing a 25% boundary, and once at completion."""

    def __init__(self, total: int, callback: ProgressCallback | None):
        self.total = total
        self.callback = callback
        self._last_quarter = 0
        self._done = 0

    def step(self) -> None:
        self._done += 1
        if self.callback is None or self.total <= 0:
            return
        fraction = self._done / self.total
        quarter = int(fraction * 4)
        if self._done >= self.total:
            self.callback(1.0, True)
            self._last_quarter = 4
        elif quarter > self._last_quarter:
            self._last_quarter = quarter
            self.callback(quarter / 4, False)


@dataclass
class LeadsOutcome:
    delta: dict[str, dict[str, Any]] = field(default_factory=dict)
    per_operator: dict[tuple[str, str], PerOperatorMetric] = field(default_factory=dict)


class LeadCostAggregator:
    """Fetches source rows and derives global and per-operator metrics."""

    def __init__(
        self,
        client: AnalyticsQueryClient,
        *,
        batch_size: int | None = None,
        default_base: float | None = None,
        active_days: int | None = None,
        row_cache: SourceRowCache | None = None,
    ):
        settings = get_settings()
        self.client = client
        self.batch_size = batch_size or settings.leads_batch_size
        self.default_base = default_base or settings.rating_default_base
        self.active_days = active_days or settings.operator_active_days
        self.rows = row_cache if row_cache is not None else SourceRowCache()

    async def fetch_rows(
        self,
        tracker_to_article: Mapping[str, str],
        today: date,
        progress: ProgressCallback | None = None,
    ) -> dict[str, list[SourceRow]]:
        """Fetch rows for the given trackers and replace them in the row cache."""
        fetched: dict[str, list[SourceRow]] = {a: [] for a in tracker_to_article.values()}
        tracker_ids = sorted(tracker_to_article)
        if not tracker_ids:
            return fetched

        chunks = [
            tracker_ids[i : i + self.batch_size] for i in range(0, len(tracker_ids), self.batch_size)
        ]
        reporter = ProgressReporter(len(chunks), progress)
        start = fetch_start(today)

        for chunk in chunks:
            result = await self.client.query(build_rows_query(start, today, chunk), label="leads")
            for row in result.rows:
                article = tracker_to_article.get(str(row.get("offer_id_tracker") or ""))
                day = parse_day(row.get("adv_date"))
                if not article or day is None:
                    continue
                fetched[article].append(
                    SourceRow(
                        article=article,
                        source_id=str(row.get("source_id_tracker") or "unknown"),
                        date=day,
                        leads=float(row.get("total_leads") or 0),
                        cost=float(row.get("total_cost") or 0),
                    )
                )
            reporter.step()

        for article, rows in fetched.items():
            self.rows.replace(article, rows)
        logger.info(
            f"Leads: {sum(len(r) for r in fetched.values())} rows for {len(fetched)} articles "
            f"in {len(chunks)} chunks"
        )
        return fetched

    def global_delta(
        self,
        offers: Iterable[OfferMetric],
        red_prices: Mapping[str, float | None],
        today: date,
    ) -> dict[str, dict[str, Any]]:
        delta: dict[str, dict[str, Any]] = {}
        for offer in offers:
            if offer.article not in self.rows:
                continue
            base = red_prices.get(offer.article, offer.zone_prices.red) or self.default_base
            delta[offer.article] = global_metrics(self.rows.get(offer.article), base, today)
        return delta

    def operator_metrics(
        self,
        assignments: Iterable[OperatorAssignment],
        articles_by_offer_id: Mapping[str, str],
        today: date,
        operator_id: str | None = None,
    ) -> dict[tuple[str, str], PerOperatorMetric]:
        """Per-operator metrics from cached rows, optionally for one operator only."""
        metrics: dict[tuple[str, str], PerOperatorMetric] = {}
        for (offer_id, op_id), sources in operator_sources(assignments).items():
            if operator_id is not None and op_id != operator_id:
                continue
            article = articles_by_offer_id.get(offer_id)
            if not article or article not in self.rows:
                continue
            metrics[(article, op_id)] = operator_metric(
                article, op_id, self.rows.get(article), sources, today, self.active_days
            )
        return metrics

    async def run(
        self,
        offers: tuple[OfferMetric, ...],
        mapping: Mapping[str, str],
        red_prices: Mapping[str, float | None],
        assignments: Iterable[OperatorAssignment] = (),
        *,
        today: date | None = None,
        progress: ProgressCallback | None = None,
    ) -> LeadsOutcome:
        """Fetch rows for ``offers`` and compute both aggregations."""
        today = today or date.today()
        tracker_to_article = {
            mapping[o.article]: o.article for o in offers if mapping.get(o.article)
        }
        skipped = len(offers) - len(tracker_to_article)
        if skipped:
            logger.info(f"Leads: {skipped} offers without tracker mapping skipped")

        await self.fetch_rows(tracker_to_article, today, progress)
        articles = {o.offer_id: o.article for o in offers}
        return LeadsOutcome(
            delta=self.global_delta(offers, red_prices, today),
            per_operator=self.operator_metrics(assignments, articles, today),
        )

    async def run_operator(
        self,
        offer: OfferMetric,
        operator_id: str,
        mapping: Mapping[str, str],
        assignments: Iterable[OperatorAssignment],
        *,
        today: date | None = None,
    ) -> dict[tuple[str, str], PerOperatorMetric]:
        """Re-scope one operator on one offer; fetches only on a row-cache miss."""
        scoped = [a for a in assignments if a.offer_id == offer.offer_id]
        return await self.run_operators(
            (offer,), mapping, scoped, today=today, operator_id=operator_id
        )

    async def run_operators(
        self,
        offers: Iterable[OfferMetric],
        mapping: Mapping[str, str],
        assignments: Iterable[OperatorAssignment],
        *,
        today: date | None = None,
        operator_id: str | None = None,
    ) -> dict[tuple[str, str], PerOperatorMetric]:
        """Per-operator metrics for ``offers``, fetching only articles missing from the row cache."""
        today = today or date.today()
        offers = tuple(offers)
        missing: dict[str, str] = {}
        for offer in offers:
            if offer.article in self.rows:
                continue
            tracker = mapping.get(offer.article)
            if tracker:
                missing[tracker] = offer.article
            else:
                logger.info(f"Leads: {offer.article} has no tracker mapping")
        if missing:
            await self.fetch_rows(missing, today)
        articles = {o.offer_id: o.article for o in offers}
        return self.operator_metrics(assignments, articles, today, operator_id)
