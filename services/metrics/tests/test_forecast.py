import json
from datetime import date, timedelta

import httpx
import pytest

from conftest import TODAY, make_offer
from offer_metrics.models import DaysRemainingStatus, ForecastSample
from offer_metrics.services.errors import TransientQueryError
from offer_metrics.services.forecast import (
    ForecastFetch,
    SalesForecaster,
    days_remaining,
    forecast_from_samples,
    infer_trend_sign,
    monthly_periods,
    smooth,
)
from offer_metrics.services.query_client import AnalyticsQueryClient


def samples(values, article="A1", start=date(2026, 9, 1)):
    return [ForecastSample(article, start + timedelta(days=i), v) for i, v in enumerate(values)]


def test_smoothing_sequence():
    smoothed = smooth([10, 12, 9, 11], alpha=0.3)
    assert smoothed[0] == 10
    assert smoothed[-1] == pytest.approx(10.384)
    assert 120 / smoothed[-1] == pytest.approx(11.556, abs=1e-3)


@pytest.mark.parametrize(
    "leads",
    [[10, 12, 9, 11], [0, 0, 50, 3], [7], [1, 100, 1, 100, 1], [5.5, 5.5, 5.5]],
)
def test_smoothed_values_stay_within_input_bounds(leads):
    for value in smooth(leads, alpha=0.3):
        assert min(leads) - 1e-9 <= value <= max(leads) + 1e-9


def test_too_few_samples_gives_no_forecast():
    assert forecast_from_samples(samples([10, 12, 9, 11]), min_samples=10) is None
    result = forecast_from_samples(samples([10, 12, 9, 11]), min_samples=4)
    assert result.forecast == pytest.approx(10.384)


def test_samples_are_ordered_by_date_before_smoothing():
    ordered = samples([10, 12, 9, 11])
    result = forecast_from_samples(list(reversed(ordered)), min_samples=1)
    assert result.forecast == pytest.approx(10.384)


def test_forecast_is_floored():
    result = forecast_from_samples(samples([0] * 12), floor=0.1)
    assert result.forecast == 0.1


def test_trend_sign_follows_last_smoothed_step():
    assert infer_trend_sign([10, 12, 13]) == 1
    assert infer_trend_sign([10, 10, 10]) == 1
    assert infer_trend_sign([10, 12, 11.9]) == -1
    # A dip earlier in the series does not count
    assert infer_trend_sign([10, 20, 9, 9.5]) == 1
    assert infer_trend_sign([7]) == 1
    assert infer_trend_sign([]) == 1


def test_days_remaining_statuses():
    assert days_remaining(120, 10.384) == (pytest.approx(11.556, abs=1e-3), DaysRemainingStatus.OK)
    assert days_remaining(120, None) == (None, DaysRemainingStatus.INSUFFICIENT_HISTORY)
    assert days_remaining(None, 2.0) == (None, DaysRemainingStatus.NO_STOCK)
    assert days_remaining(120, 2.0, trend_sign=-1) == (None, DaysRemainingStatus.DECLINING_TREND)
    assert days_remaining(-4, 2.0) == (None, DaysRemainingStatus.DECLINING_TREND)


def test_monthly_periods_cover_trailing_months():
    periods = monthly_periods(TODAY, 12)
    assert periods[0] == (date(2025, 10, 1), date(2025, 10, 31))
    assert periods[-1] == (date(2026, 10, 1), TODAY)
    assert len(periods) == 13
    assert periods[4] == (date(2026, 2, 1), date(2026, 2, 28))


def history_handler(failing_month: str | None = None):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        sql = json.loads(request.content)["sql"]
        requests.append(sql)
        if failing_month and f"'{failing_month}-01'" in sql:
            return httpx.Response(503)
        start = sql.split("BETWEEN '")[1][:10]
        rows = [
            {"offer_id_tracker": "t1", "adv_date": f"{start[:8]}{day:02d}", "total_leads": 3}
            for day in range(1, 6)
        ]
        return httpx.Response(200, json=rows)

    return handler, requests


@pytest.mark.asyncio
async def test_failed_month_is_skipped(sleep):
    handler, requests = history_handler(failing_month="2026-08")
    client = AnalyticsQueryClient("http://analytics.test", transport=httpx.MockTransport(handler))
    forecaster = SalesForecaster(client, months=3, request_delay_s=0.5, sleep=sleep)

    fetch = await forecaster.fetch_history({"t1": "A1"}, TODAY)

    assert fetch.skipped_months == ["2026-08"]
    assert fetch.fetched_months == ["2026-07", "2026-09", "2026-10"]
    assert len(fetch.samples["A1"]) == 15
    # 3 attempts for August, one request for every other month
    assert len(requests) == 6
    assert sleep.delays == [0.5, 1.5, 3.0, 0.5, 0.5]


@pytest.mark.asyncio
async def test_all_months_failing_fails_the_stage(sleep):
    client = AnalyticsQueryClient(
        "http://analytics.test", transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )
    forecaster = SalesForecaster(client, months=1, request_delay_s=0, sleep=sleep)
    with pytest.raises(TransientQueryError):
        await forecaster.fetch_history({"t1": "A1"}, TODAY)


def test_compute_uses_fresh_stock_over_stored_stock():
    client = AnalyticsQueryClient("http://analytics.test")
    forecaster = SalesForecaster(client, alpha=0.3, min_samples=10, floor=0.1)
    fetch = ForecastFetch(samples={"A1": samples([5] * 12), "A2": samples([5] * 3, "A2")})
    offers = (
        make_offer("o1", "A1", stock_quantity=10),
        make_offer("o2", "A2", stock_quantity=10),
        make_offer("o3", "A3", stock_quantity=10),
    )

    delta = forecaster.compute(offers, fetch, {"A1", "A2"}, stock_totals={"A1": 100})

    assert delta["A1"]["sales_forecast_per_day"] == pytest.approx(5.0)
    assert delta["A1"]["days_remaining"] == pytest.approx(20.0)
    assert delta["A1"]["days_remaining_status"] is DaysRemainingStatus.OK
    assert delta["A2"]["days_remaining"] is None
    assert delta["A2"]["days_remaining_status"] is DaysRemainingStatus.INSUFFICIENT_HISTORY
    # Unmapped articles are left alone
    assert "A3" not in delta


def test_declining_history_gives_sentinel_not_days():
    client = AnalyticsQueryClient("http://analytics.test")
    forecaster = SalesForecaster(client, alpha=0.3, min_samples=10, floor=0.1)
    fetch = ForecastFetch(samples={"A1": samples([8] * 11 + [2])})

    delta = forecaster.compute((make_offer("o1", "A1"),), fetch, {"A1"}, stock_totals={"A1": 100})

    assert delta["A1"]["sales_forecast_per_day"] == pytest.approx(6.2)
    assert delta["A1"]["days_remaining"] is None
    assert delta["A1"]["days_remaining_status"] is DaysRemainingStatus.DECLINING_TREND
