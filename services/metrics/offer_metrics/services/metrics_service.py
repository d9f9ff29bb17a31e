"""Metrics service: the single entry point used by routes and scripts.

Flow:
1. ``load()`` reads the session cache; on a hit the live tables are restored
   without refetching offer metrics. Per-operator metrics are not cached, so
   a background operators run recomputes them from the restored assignments.
2. On a miss (or ``refresh_all()``), base records come from the catalog
   service, a full pipeline run enriches them, and the snapshot is written
   back to the cache.
3. ``handle_event()`` feeds pushed assignment changes to the reconciler.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any

from offer_metrics.models import (
    ChangeEvent,
    Operator,
    OperatorAssignment,
    OfferMetric,
    PerOperatorMetric,
)
from offer_metrics.services.assignments import AssignmentTable
from offer_metrics.services.cache import CacheManager, CacheSnapshot, CacheStorage
from offer_metrics.services.catalog_client import CatalogClient
from offer_metrics.services.forecast import SalesForecaster
from offer_metrics.services.leads import LeadCostAggregator
from offer_metrics.services.operator_status import OperatorStatusResolver
from offer_metrics.services.pipeline import (
    OfferTable,
    PipelineOrchestrator,
    PipelineRun,
    RunMode,
    StageState,
)
from offer_metrics.services.query_client import AnalyticsQueryClient
from offer_metrics.services.reconciler import ReconcileOutcome, RealtimeReconciler
from offer_metrics.services.stock import StockAggregator
from offer_metrics.services.zones import ZonePriceCalculator
from offer_metrics.settings import get_settings

logger = logging.getLogger("uvicorn.error")


@dataclass
class LoadResult:
    source: str  # "cache" | "refresh"
    offers: int
    run: PipelineRun | None = None
    # Background per-operator recompute scheduled after a cache restore
    operator_task: asyncio.Task[PipelineRun] | None = None


@dataclass
class MetricsView:
    """What the display layer renders."""

    offers: list[OfferMetric] = field(default_factory=list)
    assignments: dict[str, list[OperatorAssignment]] = field(default_factory=dict)
    # offer_id -> operator_id -> metric
    operator_metrics: dict[str, dict[str, PerOperatorMetric]] = field(default_factory=dict)
    pending: frozenset[str] = frozenset()
    needs_more_height: dict[str, bool] = field(default_factory=dict)
    stages: list[StageState] = field(default_factory=list)
    statuses: dict[str, Any] = field(default_factory=dict)
    operators: list[Operator] = field(default_factory=list)
    cached_at_ms: int | None = None


class MetricsService:
    def __init__(
        self,
        *,
        catalog: CatalogClient,
        cache: CacheManager,
        orchestrator: PipelineOrchestrator,
        analytics: AnalyticsQueryClient | None = None,
    ):
        self.catalog = catalog
        self.analytics = analytics
        self.cache = cache
        self.orchestrator = orchestrator
        self.table: OfferTable = orchestrator.table
        self.assignments: AssignmentTable = orchestrator.assignments
        self.reconciler = RealtimeReconciler(self.assignments, orchestrator)
        self.operators: list[Operator] = []
        self.cached_at_ms: int | None = None
        self.last_run: PipelineRun | None = None
        self._refresh_lock = asyncio.Lock()

    async def load(self, force: bool = False) -> LoadResult:
        """Restore from cache, or run a full refresh on a miss (or when forced)."""
        if not force:
            snapshot = await self.cache.read_snapshot()
            if snapshot is not None:
                self._restore(snapshot)
                return LoadResult(
                    source="cache",
                    offers=len(self.table),
                    operator_task=self._schedule_operator_metrics(),
                )
        run = await self.refresh_all()
        return LoadResult(source="refresh", offers=len(self.table), run=run)

    def _restore(self, snapshot: CacheSnapshot) -> None:
        self.table.load(snapshot.metrics)
        self.table.mappings = dict(snapshot.mappings)
        self.table.statuses = dict(snapshot.statuses)
        self.table.per_operator = {}
        self.assignments.load(snapshot.assignments)
        self.operators = list(snapshot.operators)
        self.cached_at_ms = snapshot.written_at_ms

    def _schedule_operator_metrics(self) -> asyncio.Task[PipelineRun] | None:
        if len(self.assignments) == 0:
            return None
        task = asyncio.create_task(self.orchestrator.run(RunMode.OPERATORS))

        def _done(t: asyncio.Task[PipelineRun]) -> None:
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Operator metrics after cache restore failed: {t.exception()}")

        task.add_done_callback(_done)
        return task

    async def refresh_all(self) -> PipelineRun:
        """Refetch base records, run the full pipeline and write the cache."""
        async with self._refresh_lock:
            data = await self.catalog.fetch_all()
            previous = {o.article: o for o in self.table.rows()}
            # Keep derived fields from the last run until the new run replaces them.
            self.table.load(
                replace(previous[o.article], **_base_fields(o)) if o.article in previous else o
                for o in data.offers
            )
            self.table.mappings = dict(data.mappings)
            self.assignments.load(data.assignments)
            self.table.statuses = {
                k: v for k, v in self.table.statuses.items() if k in self.assignments
            }
            offer_ids = {o.article: o.offer_id for o in data.offers}
            self.table.per_operator = {
                (article, operator_id): metric
                for (article, operator_id), metric in self.table.per_operator.items()
                if self.assignments.has_operator(offer_ids.get(article, ""), operator_id)
            }
            self.operators = list(data.operators)

        run = await self.orchestrator.run(RunMode.FULL)
        self.last_run = run
        if run.error is None:
            await self._write_cache()
        return run

    async def _write_cache(self) -> None:
        snapshot = CacheSnapshot(
            metrics=self.table.rows(),
            operators=list(self.operators),
            statuses=dict(self.table.statuses),
            assignments=self.assignments.all(),
            mappings=dict(self.table.mappings),
        )
        await self.cache.write_snapshot(snapshot)
        self.cached_at_ms = snapshot.written_at_ms

    def handle_event(self, payload: dict[str, Any]) -> ReconcileOutcome:
        """Parse and apply one change-feed payload. Raises ValueError on bad payloads."""
        event = ChangeEvent.from_payload(payload)
        outcome = self.reconciler.apply(event)
        logger.info(
            f"Event {event.kind.value} {event.assignment.id}: changed={outcome.changed} "
            f"topology={outcome.topology_changed}"
        )
        return outcome

    @property
    def loaded(self) -> bool:
        return self.cached_at_ms is not None or self.last_run is not None

    def row_needs_more_height(self, offer_id: str) -> bool:
        return self.assignments.row_needs_more_height(offer_id)

    def operator_metrics(self) -> dict[str, dict[str, PerOperatorMetric]]:
        """Per-operator metrics grouped by offer id, then operator id."""
        grouped: dict[str, dict[str, PerOperatorMetric]] = {}
        for (article, operator_id), metric in self.table.per_operator.items():
            offer = self.table.get(article)
            if offer is not None:
                grouped.setdefault(offer.offer_id, {})[operator_id] = metric
        return grouped

    def stage_states(self) -> list[StageState]:
        return list(self.orchestrator.states.values())

    def view(self) -> MetricsView:
        offers = self.table.rows()
        return MetricsView(
            offers=offers,
            assignments=self.assignments.by_offer(),
            operator_metrics=self.operator_metrics(),
            pending=self.assignments.pending,
            needs_more_height={o.offer_id: self.row_needs_more_height(o.offer_id) for o in offers},
            stages=self.stage_states(),
            statuses=dict(self.table.statuses),
            operators=list(self.operators),
            cached_at_ms=self.cached_at_ms,
        )

    async def close(self) -> None:
        await self.catalog.close()
        if self.analytics:
            await self.analytics.close()


def _base_fields(offer: OfferMetric) -> dict[str, Any]:
    return {
        "offer_id": offer.offer_id,
        "offer_name": offer.offer_name,
        "actual_roi_percent": offer.actual_roi_percent,
    }


def build_metrics_service(storage: CacheStorage) -> MetricsService:
    """Wire the service from settings."""
    settings = get_settings()
    client = AnalyticsQueryClient()
    orchestrator = PipelineOrchestrator(
        OfferTable(),
        AssignmentTable(),
        stock=StockAggregator(),
        zones=ZonePriceCalculator(client),
        forecast=SalesForecaster(client),
        leads=LeadCostAggregator(client),
        statuses=OperatorStatusResolver(client),
    )
    cache = CacheManager(
        storage,
        version=settings.cache_version,
        ttl_s=settings.cache_ttl_s,
        prefix=settings.cache_key_prefix,
    )
    return MetricsService(
        catalog=CatalogClient(), cache=cache, orchestrator=orchestrator, analytics=client
    )


# Service instance (initialized on startup)
_service: MetricsService | None = None


def init_metrics_service(storage: CacheStorage) -> MetricsService:
    global _service
    _service = build_metrics_service(storage)
    return _service


async def close_metrics_service() -> None:
    global _service
    if _service:
        await _service.close()
        _service = None


def get_metrics_service() -> MetricsService:
    if _service is None:
        raise RuntimeError("Metrics service not initialized. Call init_metrics_service() first.")
    return _service
