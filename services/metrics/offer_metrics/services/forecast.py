"""Sales forecaster (stock-days engine).

History is fetched as one grouped query per calendar month, sequentially,
with a fixed delay between requests. Per article the daily lead counts are
smoothed exponentially:

    f0 = leads[0]
    fi = alpha * leads[i] + (1 - alpha) * f(i-1)

The final value (clamped to ``floor``) is the forecast per day, and
``days_remaining = stock / forecast``.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from offer_metrics.models import DaysRemainingStatus, ForecastSample, OfferMetric
from offer_metrics.services.errors import TransientQueryError
from offer_metrics.services.query_client import AnalyticsQueryClient, sql_in_list
from offer_metrics.services.retry import RetryPolicy
from offer_metrics.settings import get_settings

logger = logging.getLogger("uvicorn.error")


@dataclass
class ForecastResult:
    forecast: float
    smoothed: list[float]


@dataclass
class ForecastFetch:
    """Samples gathered by one history fetch."""

    samples: dict[str, list[ForecastSample]] = field(default_factory=dict)
    fetched_months: list[str] = field(default_factory=list)
    skipped_months: list[str] = field(default_factory=list)


# =============================================================================
# Math
# =============================================================================


def smooth(leads: Sequence[float], alpha: float = 0.3) -> list[float]:
    """Exponential smoothing sequence, one value per input."""
    if not leads:
        return []
    values = [float(leads[0])]
    for x in leads[1:]:
        values.append(alpha * float(x) + (1 - alpha) * values[-1])
    return values


def forecast_from_samples(
    samples: Iterable[ForecastSample],
    *,
    alpha: float = 0.3,
    min_samples: int = 10,
    floor: float = 0.1,
) -> ForecastResult | None:
    """Forecast leads/day from one article's samples.

    Returns ``None`` when fewer than ``min_samples`` are available.
    """
    ordered = sorted(samples, key=lambda s: s.date)
    if len(ordered) < min_samples:
        return None
    smoothed = smooth([s.leads for s in ordered], alpha)
    return ForecastResult(forecast=max(smoothed[-1], floor), smoothed=smoothed)


def infer_trend_sign(smoothed: Sequence[float]) -> int:
    """Sign of the last smoothed step: -1 when the series ends on a negative slope."""
    if len(smoothed) < 2:
        return 1
    return -1 if smoothed[-1] < smoothed[-2] else 1


def days_remaining(
    stock: int | None, forecast: float | None, trend_sign: int = 1
) -> tuple[float | None, DaysRemainingStatus]:
    """Days until stock runs out, or a status explaining why there is no number.

    Never returns a negative value.
    """
    if forecast is None or forecast <= 0:
        return None, DaysRemainingStatus.INSUFFICIENT_HISTORY
    if stock is None:
        return None, DaysRemainingStatus.NO_STOCK
    if trend_sign < 0:
        return None, DaysRemainingStatus.DECLINING_TREND
    days = stock / forecast
    if days < 0:
        return None, DaysRemainingStatus.DECLINING_TREND
    return days, DaysRemainingStatus.OK


# =============================================================================
# Fetch
# =============================================================================


def monthly_periods(today: date, months: int = 12) -> list[tuple[date, date]]:
    """Calendar-month periods covering the trailing ``months``, last one clipped to today."""
    year, month = today.year, today.month - months
    while month < 1:
        month += 12
        year -= 1

    periods: list[tuple[date, date]] = []
    cur = date(year, month, 1)
    while cur <= today:
        nxt = date(cur.year + 1, 1, 1) if cur.month == 12 else date(cur.year, cur.month + 1, 1)
        end = min(nxt - timedelta(days=1), today)
        periods.append((cur, end))
        cur = nxt
    return periods


def build_history_query(start: date, end: date, tracker_ids: Iterable[str]) -> str:
    return f"""
        SELECT
            offer_id_tracker,
            DATE(adv_date) as adv_date,
            SUM(valid) as total_leads,
            SUM(cost) as total_cost
        FROM ads_collection
        WHERE adv_date BETWEEN '{start.isoformat()}' AND '{end.isoformat()}'
            AND offer_id_tracker IN ({sql_in_list(tracker_ids)})
            AND cost > 0
        GROUP BY offer_id_tracker, DATE(adv_date)
    """


def parse_day(raw: Any) -> date | None:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError:
        return None


def _num(raw: Any) -> float:
    try:
        return float(raw or 0)
    except (TypeError, ValueError):
        return 0.0


class SalesForecaster:
    """Monthly history fetch plus per-article smoothing."""

    def __init__(
        self,
        client: AnalyticsQueryClient,
        *,
        months: int | None = None,
        alpha: float | None = None,
        min_samples: int | None = None,
        floor: float | None = None,
        request_delay_s: float | None = None,
        request_timeout_s: float | None = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.client = client
        self.months = months if months is not None else settings.forecast_months
        self.alpha = alpha if alpha is not None else settings.forecast_alpha
        self.min_samples = min_samples if min_samples is not None else settings.forecast_min_samples
        self.floor = floor if floor is not None else settings.forecast_floor
        self.request_delay_s = (
            request_delay_s if request_delay_s is not None else settings.forecast_request_delay_s
        )
        self.request_timeout_s = request_timeout_s or settings.forecast_request_timeout_s
        self.retry = retry or RetryPolicy(
            max_retries=settings.forecast_max_retries,
            base_delay_s=settings.forecast_backoff_base_s,
            sleep=sleep,
        )
        self._sleep = sleep

    async def fetch_history(
        self, tracker_to_article: Mapping[str, str], today: date | None = None
    ) -> ForecastFetch:
        """Fetch month by month. A month that exhausts its retries is skipped.

        Raises:
            TransientQueryError: When every month was skipped.
        """
        fetch = ForecastFetch()
        if not tracker_to_article:
            logger.warning("Forecast: no article mappings, nothing to fetch")
            return fetch

        periods = monthly_periods(today or date.today(), self.months)
        per_day: dict[str, dict[date, float]] = defaultdict(lambda: defaultdict(float))
        tracker_ids = sorted(tracker_to_article)

        for i, (start, end) in enumerate(periods):
            if i > 0 and self.request_delay_s > 0:
                await self._sleep(self.request_delay_s)
            label = f"forecast {start:%Y-%m}"
            try:
                result = await self.client.query(
                    build_history_query(start, end, tracker_ids),
                    timeout=self.request_timeout_s,
                    retry=self.retry,
                    label=label,
                )
            except TransientQueryError as e:
                logger.warning(f"Forecast: skipping {start:%Y-%m}: {e}")
                fetch.skipped_months.append(f"{start:%Y-%m}")
                continue

            fetch.fetched_months.append(f"{start:%Y-%m}")
            for row in result.rows:
                article = tracker_to_article.get(str(row.get("offer_id_tracker") or ""))
                day = parse_day(row.get("adv_date"))
                if not article or day is None:
                    continue
                per_day[article][day] += _num(row.get("total_leads"))

        if periods and not fetch.fetched_months:
            raise TransientQueryError(f"All {len(periods)} forecast months failed")

        for article, days in per_day.items():
            fetch.samples[article] = [
                ForecastSample(article=article, date=d, leads=v) for d, v in sorted(days.items())
            ]
        logger.info(
            f"Forecast: {len(fetch.samples)} articles, {len(fetch.fetched_months)} months fetched, "
            f"{len(fetch.skipped_months)} skipped"
        )
        return fetch

    def compute(
        self,
        offers: Iterable[OfferMetric],
        fetch: ForecastFetch,
        mapped_articles: Iterable[str],
        stock_totals: Mapping[str, int] | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Forecast delta for mapped offers. ``stock_totals`` override stored stock."""
        mapped = set(mapped_articles)
        delta: dict[str, dict[str, Any]] = {}
        for offer in offers:
            if offer.article not in mapped:
                continue
            stock = offer.stock_quantity
            if stock_totals is not None and offer.article in stock_totals:
                stock = stock_totals[offer.article]

            result = forecast_from_samples(
                fetch.samples.get(offer.article, ()),
                alpha=self.alpha,
                min_samples=self.min_samples,
                floor=self.floor,
            )
            if result is None:
                value, status = None, DaysRemainingStatus.INSUFFICIENT_HISTORY
                forecast = None
            else:
                forecast = result.forecast
                sign = infer_trend_sign(result.smoothed)
                value, status = days_remaining(stock, forecast, sign)

            delta[offer.article] = {
                "sales_forecast_per_day": forecast,
                "days_remaining": value,
                "days_remaining_status": status,
            }
        return delta

    async def run(
        self,
        offers: tuple[OfferMetric, ...],
        mapping: Mapping[str, str],
        stock_totals: Mapping[str, int] | None = None,
        today: date | None = None,
    ) -> tuple[ForecastFetch, dict[str, dict[str, Any]]]:
        """Fetch history for the mapped offers and build the forecast delta.

        Args:
            offers: Offers handled by this run.
            mapping: article -> tracker offer id.
            stock_totals: Fresh stock from the stock stage, if it succeeded.
            today: Override for the end of the trailing window.
        """
        scoped = {o.article: mapping[o.article] for o in offers if mapping.get(o.article)}
        missing = len(offers) - len(scoped)
        if missing:
            logger.info(f"Forecast: {missing} offers without tracker mapping skipped")
        tracker_to_article = {tracker: article for article, tracker in scoped.items()}
        fetch = await self.fetch_history(tracker_to_article, today)
        return fetch, self.compute(offers, fetch, scoped.keys(), stock_totals)
