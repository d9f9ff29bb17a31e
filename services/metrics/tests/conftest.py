"""Shared test doubles for pipeline stages and network calls."""

import asyncio
from datetime import date
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from offer_metrics.main import app
from offer_metrics.models import (
    OfferMetric,
    Operator,
    OperatorAssignment,
    OperatorStatus,
    OperatorStatusCode,
    PerOperatorMetric,
    ZonePrices,
)
from offer_metrics.services.assignments import AssignmentTable
from offer_metrics.services.cache import CacheManager
from offer_metrics.services.catalog_client import CatalogData
from offer_metrics.services.forecast import ForecastFetch
from offer_metrics.services.leads import LeadsOutcome, operator_sources
from offer_metrics.services.metrics_service import MetricsService
from offer_metrics.services.pipeline import OfferTable, PipelineOrchestrator
from offer_metrics.services.stock import StockSnapshot, stock_delta
from offer_metrics.services.zones import ZoneRecord, zones_delta
from offer_metrics.stores.memory import InMemoryCacheStorage

TODAY = date(2026, 10, 19)


def make_offer(offer_id: str, article: str, **fields: Any) -> OfferMetric:
    return OfferMetric(offer_id=offer_id, article=article, **fields)


def make_assignment(
    assignment_id: str,
    offer_id: str = "o1",
    operator_id: str = "op1",
    source: str = "fb",
    source_ids: tuple[str, ...] = ("s1",),
) -> OperatorAssignment:
    return OperatorAssignment(
        id=assignment_id,
        offer_id=offer_id,
        operator_id=operator_id,
        source=source,
        source_ids=source_ids,
    )


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeStock:
    def __init__(self, totals: dict[str, int] | None = None, error: Exception | None = None):
        self.totals = totals or {}
        self.error = error
        self.gates: list[asyncio.Event] = []
        self.calls = 0
        self.seen_loading: list[bool] = []
        self.orchestrator: PipelineOrchestrator | None = None

    async def run(self, offers):
        self.calls += 1
        totals = dict(self.totals)
        if self.orchestrator is not None:
            self.seen_loading.append(self.orchestrator.states["stock"].loading)
        if self.gates:
            await self.gates.pop(0).wait()
        if self.error:
            raise self.error
        snapshot = StockSnapshot(totals=totals)
        return snapshot, stock_delta(offers, snapshot)


class FakeZones:
    def __init__(self, records: dict[str, ZoneRecord] | None = None, error: Exception | None = None):
        self.records = records or {}
        self.error = error

    async def run(self, offers):
        if self.error:
            raise self.error
        return self.records, zones_delta(offers, self.records)


class FakeForecast:
    def __init__(self, per_day: float = 2.0, error: Exception | None = None):
        self.per_day = per_day
        self.error = error
        self.stock_totals_seen: list[Any] = []

    async def run(self, offers, mapping, stock_totals=None, today=None):
        self.stock_totals_seen.append(stock_totals)
        if self.error:
            raise self.error
        delta = {}
        for offer in offers:
            stock = (stock_totals or {}).get(offer.article, offer.stock_quantity)
            delta[offer.article] = {
                "sales_forecast_per_day": self.per_day,
                "days_remaining": stock / self.per_day if stock is not None else None,
            }
        return ForecastFetch(), delta


class FakeLeads:
    """Leads stage double; per-operator leads equal the number of source ids."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.calls = 0
        self.operator_calls: list[tuple[str, tuple[str, ...]]] = []
        self.gates: list[asyncio.Event] = []

    async def run(self, offers, mapping, red_prices, assignments=(), *, today=None, progress=None):
        self.calls += 1
        if self.gates:
            await self.gates.pop(0).wait()
        if self.error:
            raise self.error
        if progress:
            progress(1.0, True)
        delta = {o.article: {"leads_by_period": {7: 10.0}, "rating": "A"} for o in offers}
        return LeadsOutcome(delta=delta, per_operator=self._per_operator(offers, assignments))

    async def run_operator(self, offer, operator_id, mapping, assignments, *, today=None):
        sources = tuple(s for a in assignments for s in a.source_ids)
        self.operator_calls.append((operator_id, sources))
        if self.gates:
            await self.gates.pop(0).wait()
        metric = PerOperatorMetric(
            article=offer.article,
            operator_id=operator_id,
            leads_by_period={7: float(len(sources))},
        )
        return {(offer.article, operator_id): metric}

    async def run_operators(self, offers, mapping, assignments, *, today=None, operator_id=None):
        self.calls += 1
        if self.error:
            raise self.error
        return self._per_operator(offers, assignments)

    @staticmethod
    def _per_operator(offers, assignments):
        articles = {o.offer_id: o.article for o in offers}
        metrics = {}
        for (offer_id, operator_id), sources in operator_sources(assignments).items():
            if offer_id in articles:
                article = articles[offer_id]
                metrics[(article, operator_id)] = PerOperatorMetric(
                    article=article, operator_id=operator_id, leads_by_period={7: float(len(sources))}
                )
        return metrics


class FakeStatuses:
    def __init__(self, error: Exception | None = None):
        self.error = error

    async def run(self, assignments, trackers, today=None):
        if self.error:
            raise self.error
        return {a.id: OperatorStatus(OperatorStatusCode.ACTIVE, message="Active") for a in assignments}


def build_orchestrator(
    offers: list[OfferMetric],
    assignments: list[OperatorAssignment] = (),
    *,
    stock: FakeStock | None = None,
    zones: FakeZones | None = None,
    forecast: FakeForecast | None = None,
    leads: FakeLeads | None = None,
    statuses: FakeStatuses | None = None,
) -> PipelineOrchestrator:
    orchestrator = PipelineOrchestrator(
        OfferTable(offers),
        AssignmentTable(assignments),
        stock=stock or FakeStock(),
        zones=zones or FakeZones(),
        forecast=forecast or FakeForecast(),
        leads=leads or FakeLeads(),
        statuses=statuses or FakeStatuses(),
        today=lambda: TODAY,
    )
    orchestrator.table.mappings = {o.article: f"t-{o.article}" for o in offers}
    return orchestrator


def zone_record(article: str, red: float, pink: float, gold: float, green: float) -> ZoneRecord:
    thresholds = ZonePrices(red=red, pink=pink, gold=gold, green=green)
    return ZoneRecord(article=article, thresholds=thresholds, prices=thresholds, roi_type="UAH")


class FakeCatalog:
    def __init__(self, data: CatalogData):
        self.data = data
        self.calls = 0
        self.closed = False

    async def fetch_all(self) -> CatalogData:
        self.calls += 1
        return self.data

    async def close(self) -> None:
        self.closed = True


def catalog_data() -> CatalogData:
    return CatalogData(
        offers=[
            make_offer("o1", "A1", offer_name="Hoodie", actual_roi_percent=130.0),
            make_offer("o2", "B2", offer_name="Lamp", actual_roi_percent=10.0),
        ],
        operators=[Operator("op1", "Dana")],
        assignments=[make_assignment("a1", "o1", "op1")],
        mappings={"A1": "t1", "B2": "t2"},
    )


def build_service(storage: InMemoryCacheStorage | None = None, **stages: Any) -> MetricsService:
    orchestrator = build_orchestrator([], **stages)
    cache = CacheManager(storage or InMemoryCacheStorage(), version=3, ttl_s=300, prefix="offers:")
    return MetricsService(catalog=FakeCatalog(catalog_data()), cache=cache, orchestrator=orchestrator)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
async def client():
    """Create test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
