import json
from datetime import date

import httpx
import pytest

from conftest import TODAY, make_assignment, make_offer
from offer_metrics.models import SourceRow
from offer_metrics.services.leads import (
    LeadCostAggregator,
    ProgressReporter,
    calculate_rating,
    fetch_start,
    operator_metric,
    previous_months,
    rating_history,
    sum_windows,
)
from offer_metrics.services.query_client import AnalyticsQueryClient


def row(day: str, source: str, leads: float, cost: float, article: str = "A1") -> SourceRow:
    return SourceRow(article=article, source_id=source, date=date.fromisoformat(day), leads=leads, cost=cost)


ROWS = [
    row("2026-10-19", "s1", 2, 10),
    row("2026-10-18", "s1", 2, 10),
    row("2026-10-17", "s1", 2, 10),
    row("2026-10-10", "s2", 1, 30),
    row("2026-08-15", "s1", 4, 100),
]


def test_sum_windows():
    leads, cost, cpl = sum_windows(ROWS, TODAY)
    assert leads == {7: 6, 14: 7, 30: 7, 60: 7, 90: 11}
    assert cost == {7: 30, 14: 60, 30: 60, 60: 60, 90: 160}
    assert cpl[7] == 5.0
    assert cpl[90] == pytest.approx(160 / 11)


def test_zero_leads_gives_zero_cpl():
    _, _, cpl = sum_windows([row("2026-10-19", "s1", 0, 25)], TODAY)
    assert cpl[7] == 0.0


@pytest.mark.parametrize(
    "cpl,base,expected",
    [
        (35, 100, "A"),
        (35.01, 100, "B"),
        (65, 100, "B"),
        (90, 100, "C"),
        (91, 100, "D"),
        (0, 100, "N/A"),
        (5, None, "N/A"),
        (5, 0, "N/A"),
    ],
)
def test_rating_thresholds(cpl, base, expected):
    assert calculate_rating(cpl, base) == expected


def test_rating_history_covers_three_previous_months():
    assert previous_months(TODAY) == [
        (date(2026, 9, 1), date(2026, 9, 30)),
        (date(2026, 8, 1), date(2026, 8, 31)),
        (date(2026, 7, 1), date(2026, 7, 31)),
    ]
    history = rating_history(ROWS, 100.0, TODAY)
    assert [(m.month, m.rating) for m in history] == [(9, "N/A"), (8, "A"), (7, "N/A")]
    assert history[1].cpl == 25.0


def test_fetch_window_reaches_oldest_rating_month():
    assert fetch_start(TODAY) == date(2026, 7, 1)
    assert fetch_start(date(2026, 1, 31)) == date(2025, 10, 1)


def test_operator_metric_filters_by_source_ids():
    s1 = operator_metric("A1", "op1", ROWS, {"s1"}, TODAY)
    assert s1.leads_by_period[7] == 6
    assert s1.active_days == 4
    assert s1.active_days_cost == 130
    assert s1.consecutive_active_days == 3
    assert s1.last_active_date == date(2026, 10, 19)

    s2 = operator_metric("A1", "op2", ROWS, {"s2"}, TODAY)
    assert s2.leads_by_period[7] == 0
    assert s2.leads_by_period[14] == 1
    assert s2.consecutive_active_days == 0
    assert s2.last_active_date == date(2026, 10, 10)


def test_progress_fires_on_quarter_boundaries_only():
    calls = []
    reporter = ProgressReporter(8, lambda fraction, done: calls.append((fraction, done)))
    for _ in range(8):
        reporter.step()
    assert calls == [(0.25, False), (0.5, False), (0.75, False), (1.0, True)]


def rows_handler():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        sql = json.loads(request.content)["sql"]
        requests.append(sql)
        payload = []
        for tracker in ("t1", "t2", "t3", "t4"):
            if f"'{tracker}'" not in sql:
                continue
            for r in ROWS:
                payload.append(
                    {
                        "offer_id_tracker": tracker,
                        "adv_date": r.date.isoformat(),
                        "total_leads": r.leads,
                        "total_cost": r.cost,
                        "source_id_tracker": r.source_id,
                    }
                )
        return httpx.Response(200, json=payload)

    return handler, requests


def make_aggregator(handler, batch_size=200) -> LeadCostAggregator:
    client = AnalyticsQueryClient("http://analytics.test", transport=httpx.MockTransport(handler))
    return LeadCostAggregator(client, batch_size=batch_size, default_base=3.5, active_days=14)


@pytest.mark.asyncio
async def test_run_computes_global_and_operator_metrics():
    handler, requests = rows_handler()
    aggregator = make_aggregator(handler)
    offers = (make_offer("o1", "A1"), make_offer("o2", "A2"))
    assignments = [
        make_assignment("a1", "o1", "op1", source_ids=("s1",)),
        make_assignment("a2", "o1", "op1", source="google", source_ids=("s2",)),
    ]

    outcome = await aggregator.run(
        offers, {"A1": "t1", "A2": "t2"}, {"A1": 20.0}, assignments, today=TODAY
    )

    assert len(requests) == 1
    assert outcome.delta["A1"]["rating"] == "A"
    assert outcome.delta["A1"]["rating_cpl"] == 5.0
    # No red price: falls back to the default base (5 / 3.5 > 90%)
    assert outcome.delta["A2"]["rating"] == "D"
    metric = outcome.per_operator[("A1", "op1")]
    assert metric.leads_by_period[14] == 7


@pytest.mark.asyncio
async def test_progress_reported_per_quarter_of_batches():
    handler, requests = rows_handler()
    aggregator = make_aggregator(handler, batch_size=1)
    offers = tuple(make_offer(f"o{i}", f"A{i}") for i in range(1, 5))
    mapping = {f"A{i}": f"t{i}" for i in range(1, 5)}
    calls = []

    await aggregator.run(
        offers, mapping, {}, today=TODAY, progress=lambda fraction, done: calls.append((fraction, done))
    )

    assert len(requests) == 4
    assert calls == [(0.25, False), (0.5, False), (0.75, False), (1.0, True)]


@pytest.mark.asyncio
async def test_rescoping_an_operator_reuses_cached_rows():
    handler, requests = rows_handler()
    aggregator = make_aggregator(handler)
    offer = make_offer("o1", "A1")
    await aggregator.run((offer,), {"A1": "t1"}, {}, today=TODAY)
    assert len(requests) == 1

    before = aggregator.operator_metrics(
        [make_assignment("a1", "o1", "op1", source_ids=("s1",))], {"o1": "A1"}, TODAY
    )
    after = await aggregator.run_operator(
        offer,
        "op1",
        {"A1": "t1"},
        [make_assignment("a1", "o1", "op1", source_ids=("s1", "s2"))],
        today=TODAY,
    )

    assert len(requests) == 1
    assert before[("A1", "op1")].leads_by_period[14] == 6
    assert after[("A1", "op1")].leads_by_period[14] == 7


@pytest.mark.asyncio
async def test_operator_on_uncached_offer_fetches_once():
    handler, requests = rows_handler()
    aggregator = make_aggregator(handler)
    offer = make_offer("o3", "A3")

    metrics = await aggregator.run_operator(
        offer, "op1", {"A3": "t3"}, [make_assignment("a1", "o3", "op1")], today=TODAY
    )

    assert len(requests) == 1
    assert "'t3'" in requests[0]
    assert metrics[("A3", "op1")].leads_by_period[7] == 6
    assert "A3" in aggregator.rows


@pytest.mark.asyncio
async def test_all_operators_fetch_only_uncached_offers():
    handler, requests = rows_handler()
    aggregator = make_aggregator(handler)
    cached, fresh = make_offer("o1", "A1"), make_offer("o3", "A3")
    await aggregator.run((cached,), {"A1": "t1"}, {}, today=TODAY)

    metrics = await aggregator.run_operators(
        (cached, fresh),
        {"A1": "t1", "A3": "t3"},
        [make_assignment("a1", "o1", "op1"), make_assignment("a2", "o3", "op2")],
        today=TODAY,
    )

    assert len(requests) == 2
    assert "'t1'" not in requests[1]
    assert set(metrics) == {("A1", "op1"), ("A3", "op2")}
