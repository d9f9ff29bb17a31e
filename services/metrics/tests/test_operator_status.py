import json
from datetime import date

import httpx
import pytest

from conftest import TODAY, make_assignment
from offer_metrics.models import OperatorStatusCode
from offer_metrics.services.operator_status import OperatorStatusResolver, SpendRecord, resolve_status
from offer_metrics.services.query_client import AnalyticsQueryClient


SPEND = {
    ("s1", "t1"): SpendRecord(last_spend=date(2026, 10, 17), spend_today=0.0),
    ("s2", "t1"): SpendRecord(last_spend=TODAY, spend_today=12.5),
    ("s3", "t1"): SpendRecord(last_spend=None, spend_today=0.0),
}


def test_spend_today_is_active():
    status = resolve_status(["s1", "s2"], "t1", SPEND, TODAY)
    assert status.status is OperatorStatusCode.ACTIVE


def test_no_spend_today_reports_since_day_after_last_spend():
    status = resolve_status(["s1"], "t1", SPEND, TODAY)
    assert status.status is OperatorStatusCode.NOT_CONFIGURED
    assert status.since == date(2026, 10, 18)
    assert status.message == "No spend since 2026-10-18"


def test_never_spent():
    status = resolve_status(["s3"], "t1", SPEND, TODAY)
    assert status.status is OperatorStatusCode.NOT_CONFIGURED
    assert status.since is None


def test_unknown_sources_are_not_in_tracker():
    assert resolve_status(["zz"], "t1", SPEND, TODAY).status is OperatorStatusCode.NOT_IN_TRACKER
    assert resolve_status(["s1"], None, SPEND, TODAY).status is OperatorStatusCode.NOT_IN_TRACKER


def test_no_source_ids():
    status = resolve_status([], "t1", SPEND, TODAY)
    assert status.status is OperatorStatusCode.NOT_CONFIGURED
    assert status.message == "No source ids"


@pytest.mark.asyncio
async def test_resolver_chunks_sources_into_parallel_queries():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        sql = json.loads(request.content)["sql"]
        requests.append(sql)
        rows = [
            {"source_id_tracker": s, "offer_id_tracker": "t1", "last_spend": "2026-10-19", "spend_today": 4}
            for s in ("s1", "s2")
            if f"'{s}'" in sql.split("source_id_tracker IN")[1]
        ]
        return httpx.Response(200, json=rows)

    client = AnalyticsQueryClient("http://analytics.test", transport=httpx.MockTransport(handler))
    resolver = OperatorStatusResolver(client, chunk_size=1)
    assignments = [
        make_assignment("a1", "o1", source_ids=("s1",)),
        make_assignment("a2", "o1", "op2", source_ids=("s2",)),
        make_assignment("a3", "o2", "op3", source_ids=("s9",)),
    ]

    statuses = await resolver.run(assignments, {"o1": "t1"}, TODAY)

    assert len(requests) == 3
    assert statuses["a1"].status is OperatorStatusCode.ACTIVE
    assert statuses["a2"].status is OperatorStatusCode.ACTIVE
    assert statuses["a3"].status is OperatorStatusCode.NOT_IN_TRACKER


@pytest.mark.asyncio
async def test_resolver_without_assignments_makes_no_request():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("unexpected request")

    client = AnalyticsQueryClient("http://analytics.test", transport=httpx.MockTransport(handler))
    assert await OperatorStatusResolver(client).run([], {}, TODAY) == {}
