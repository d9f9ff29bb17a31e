"""Pipeline orchestrator.

Runs the metric stages for a set of offers and merges their results into the
live ``OfferTable``:

    phase 1 (concurrent): stock, zones, statuses
    phase 2 (concurrent): forecast (uses the stock snapshot),
                          leads (uses the zone prices)

Every stage receives an immutable tuple of offers and returns a delta
(``article -> field changes``). Deltas are merged in the fixed order
stock -> zones -> forecast -> leads, each stage owning a disjoint field set,
and ``current_zone`` is recomputed last. A failed stage contributes nothing;
its fields keep their previous values.

Runs carry a generation id. A run never overwrites an article (or an operator
metric / status) that a newer run has already merged.
Operator metrics are merged only while their (offer, operator) pair still has
a live assignment. An ``operators`` run recomputes them for every live
assignment without touching offer metrics.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any

import httpx

from offer_metrics.models import (
    STAGE_FIELDS,
    OfferMetric,
    OperatorAssignment,
    OperatorStatus,
    PerOperatorMetric,
)
from offer_metrics.services.assignments import AssignmentTable
from offer_metrics.services.errors import EndpointUnavailableError, TransientQueryError
from offer_metrics.services.forecast import SalesForecaster
from offer_metrics.services.leads import LeadCostAggregator
from offer_metrics.services.operator_status import OperatorStatusResolver
from offer_metrics.services.stock import StockAggregator
from offer_metrics.services.zones import ZonePriceCalculator, classify_zone

logger = logging.getLogger("uvicorn.error")

STAGES = ("stock", "zones", "statuses", "forecast", "leads")
MERGE_ORDER = ("stock", "zones", "forecast", "leads")

Delta = dict[str, dict[str, Any]]


class RunMode(Enum):
    FULL = "full"
    SCOPED = "scoped"
    OPERATORS = "operators"


@dataclass(frozen=True)
class RunScope:
    """One offer, or one operator within one offer."""

    offer_id: str
    operator_id: str | None = None


@dataclass
class StageState:
    """Readiness of one stage, as seen by the display layer."""

    name: str
    inflight: int = 0
    ready: bool = False
    error: str | None = None
    progress: float | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def loading(self) -> bool:
        return self.inflight > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "loading": self.loading,
            "ready": self.ready,
            "error": self.error,
            "progress": self.progress,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


@dataclass
class StageResult:
    name: str
    ok: bool = False
    value: Any = None
    error: Exception | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    @property
    def transport_failure(self) -> bool:
        return is_transport_error(self.error)


@dataclass
class PipelineRun:
    generation: int
    mode: RunMode
    scope: RunScope | None = None
    stages: dict[str, StageResult] = field(default_factory=dict)
    merged: list[str] = field(default_factory=list)
    stale_skipped: list[str] = field(default_factory=list)
    skipped_months: list[str] = field(default_factory=list)
    error: EndpointUnavailableError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(r.ok for r in self.stages.values())

    def get_summary(self) -> dict[str, Any]:
        return {
            "generation": self.generation,
            "mode": self.mode.value,
            "scope": (
                {"offer_id": self.scope.offer_id, "operator_id": self.scope.operator_id}
                if self.scope
                else None
            ),
            "stages": {
                name: {
                    "ok": r.ok,
                    "error": str(r.error) if r.error else None,
                    "duration_s": round(r.duration_seconds or 0.0, 3),
                }
                for name, r in self.stages.items()
            },
            "merged": len(self.merged),
            "stale_skipped": len(self.stale_skipped),
            "skipped_months": list(self.skipped_months),
            "error": str(self.error) if self.error else None,
        }


def is_transport_error(error: BaseException | None) -> bool:
    """Network-level failure (as opposed to a shape or logic error)."""
    if error is None:
        return False
    if isinstance(error, (TransientQueryError, httpx.TransportError)):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return False


# =============================================================================
# Live offer table
# =============================================================================


class OfferTable:
    """In-memory offer metrics plus per-operator results and statuses."""

    def __init__(self, offers: Iterable[OfferMetric] = ()):
        self._offers: dict[str, OfferMetric] = {}
        self.mappings: dict[str, str] = {}
        self.statuses: dict[str, OperatorStatus] = {}
        self.per_operator: dict[tuple[str, str], PerOperatorMetric] = {}
        self._generations: dict[Any, int] = {}
        self.load(offers)

    def __len__(self) -> int:
        return len(self._offers)

    def load(self, offers: Iterable[OfferMetric]) -> None:
        self._offers = {o.article: o for o in offers}
        self._generations.clear()

    def rows(self) -> list[OfferMetric]:
        return list(self._offers.values())

    def get(self, article: str) -> OfferMetric | None:
        return self._offers.get(article)

    def by_offer_id(self, offer_id: str) -> OfferMetric | None:
        for offer in self._offers.values():
            if offer.offer_id == offer_id:
                return offer
        return None

    def snapshot(self, offer_ids: Iterable[str] | None = None) -> tuple[OfferMetric, ...]:
        if offer_ids is None:
            return tuple(self._offers.values())
        wanted = set(offer_ids)
        return tuple(o for o in self._offers.values() if o.offer_id in wanted)

    def tracker_by_offer_id(self) -> dict[str, str]:
        return {
            o.offer_id: self.mappings[o.article]
            for o in self._offers.values()
            if self.mappings.get(o.article)
        }

    def _accept(self, key: Any, generation: int) -> bool:
        if self._generations.get(key, 0) > generation:
            return False
        self._generations[key] = generation
        return True

    def merge_fields(self, article: str, changes: dict[str, Any], generation: int) -> bool:
        """Replace the record for ``article`` with ``changes`` applied. False when stale."""
        current = self._offers.get(article)
        if current is None:
            return False
        if not self._accept(("offer", article), generation):
            return False
        updated = replace(current, **changes)
        updated = replace(updated, current_zone=classify_zone(updated.actual_roi_percent, updated.zone_thresholds))
        self._offers[article] = updated
        return True

    def merge_status(self, assignment_id: str, status: OperatorStatus, generation: int) -> bool:
        if not self._accept(("status", assignment_id), generation):
            return False
        self.statuses[assignment_id] = status
        return True

    def merge_operator_metric(self, metric: PerOperatorMetric, generation: int) -> bool:
        key = (metric.article, metric.operator_id)
        if not self._accept(("operator", key), generation):
            return False
        self.per_operator[key] = metric
        return True

    def drop_status(self, assignment_id: str) -> None:
        self.statuses.pop(assignment_id, None)

    def drop_operator_metric(self, article: str, operator_id: str, generation: int) -> None:
        """Remove the metric; runs older than ``generation`` can no longer bring it back."""
        key = (article, operator_id)
        self._accept(("operator", key), generation)
        self.per_operator.pop(key, None)


# =============================================================================
# Orchestrator
# =============================================================================


StateListener = Callable[[StageState], None]


class PipelineOrchestrator:
    def __init__(
        self,
        table: OfferTable,
        assignments: AssignmentTable,
        *,
        stock: StockAggregator,
        zones: ZonePriceCalculator,
        forecast: SalesForecaster,
        leads: LeadCostAggregator,
        statuses: OperatorStatusResolver,
        today: Callable[[], date] = date.today,
    ):
        self.table = table
        self.assignments = assignments
        self.stock = stock
        self.zones = zones
        self.forecast = forecast
        self.leads = leads
        self.statuses = statuses
        self.today = today
        self.states: dict[str, StageState] = {name: StageState(name) for name in STAGES}
        self.listeners: list[StateListener] = []
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _notify(self, state: StageState) -> None:
        for listener in self.listeners:
            listener(state)

    async def _run_stage(self, name: str, factory: Callable[[], Awaitable[Any]]) -> StageResult:
        """Run one stage with its loading flag bracketing the whole call."""
        state = self.states[name]
        result = StageResult(name=name)
        state.inflight += 1
        state.error = None
        state.progress = None
        state.started_at = result.started_at = time.time()
        self._notify(state)
        try:
            result.value = await factory()
            result.ok = True
            state.ready = True
        except Exception as e:
            logger.exception(f"Stage {name} failed")
            result.error = e
            state.error = str(e) or type(e).__name__
        finally:
            state.inflight -= 1
            state.finished_at = result.finished_at = time.time()
            self._notify(state)
        return result

    def _leads_progress(self, fraction: float, done: bool) -> None:
        state = self.states["leads"]
        state.progress = fraction
        self._notify(state)

    async def run(self, mode: RunMode = RunMode.FULL, scope: RunScope | None = None) -> PipelineRun:
        """Run the pipeline once and merge its results into the live table."""
        if mode is RunMode.SCOPED and scope is None:
            raise ValueError("Scoped run needs a scope")
        run = PipelineRun(generation=self.next_generation(), mode=mode, scope=scope)
        today = self.today()

        if mode is RunMode.OPERATORS:
            await self._run_all_operators(run, today)
        elif mode is RunMode.SCOPED and scope and scope.operator_id:
            await self._run_operator_scope(run, scope, today)
        else:
            offer_ids = [scope.offer_id] if scope else None
            await self._run_offers(run, self.table.snapshot(offer_ids), today)

        ran = list(run.stages.values())
        if ran and all(r.transport_failure for r in ran):
            run.error = EndpointUnavailableError(
                f"Analytics endpoints unreachable ({len(ran)} stages failed)"
            )
            logger.error(f"Pipeline gen {run.generation}: {run.error}")

        logger.info(
            f"Pipeline gen {run.generation} ({mode.value}): merged {len(run.merged)}, "
            f"stale {len(run.stale_skipped)}, "
            f"failed {[n for n, r in run.stages.items() if not r.ok]}"
        )
        return run

    async def _run_offers(self, run: PipelineRun, offers: tuple[OfferMetric, ...], today: date) -> None:
        if not offers:
            return
        mapping = dict(self.table.mappings)
        offer_ids = {o.offer_id for o in offers}
        assignments: tuple[OperatorAssignment, ...] = tuple(
            a for a in self.assignments.all() if a.offer_id in offer_ids
        )
        trackers = {o.offer_id: mapping[o.article] for o in offers if mapping.get(o.article)}

        stock, zones, statuses = await asyncio.gather(
            self._run_stage("stock", lambda: self.stock.run(offers)),
            self._run_stage("zones", lambda: self.zones.run(offers)),
            self._run_stage("statuses", lambda: self.statuses.run(assignments, trackers, today)),
        )

        stock_totals = stock.value[0].totals if stock.ok else None
        red_prices = (
            {article: record.prices.red for article, record in zones.value[0].items()}
            if zones.ok
            else {}
        )
        forecast, leads = await asyncio.gather(
            self._run_stage(
                "forecast", lambda: self.forecast.run(offers, mapping, stock_totals, today)
            ),
            self._run_stage(
                "leads",
                lambda: self.leads.run(
                    offers,
                    mapping,
                    red_prices,
                    assignments,
                    today=today,
                    progress=self._leads_progress,
                ),
            ),
        )
        run.stages = {r.name: r for r in (stock, zones, statuses, forecast, leads)}
        if forecast.ok:
            run.skipped_months = list(forecast.value[0].skipped_months)

        deltas: dict[str, Delta] = {
            "stock": stock.value[1] if stock.ok else {},
            "zones": zones.value[1] if zones.ok else {},
            "forecast": forecast.value[1] if forecast.ok else {},
            "leads": leads.value.delta if leads.ok else {},
        }
        self._merge_offer_deltas(run, offers, deltas)

        if statuses.ok:
            for assignment_id, status in statuses.value.items():
                if assignment_id in self.assignments:
                    self.table.merge_status(assignment_id, status, run.generation)
        if leads.ok:
            self._merge_operator_metrics(run, leads.value.per_operator.values())

    def _merge_operator_metrics(
        self, run: PipelineRun, metrics: Iterable[PerOperatorMetric], track: bool = False
    ) -> None:
        """Merge metrics whose (offer, operator) pair still has a live assignment."""
        for metric in metrics:
            offer = self.table.get(metric.article)
            if offer is None or not self.assignments.has_operator(offer.offer_id, metric.operator_id):
                logger.info(
                    f"Pipeline gen {run.generation}: {metric.operator_id} no longer assigned "
                    f"to {metric.article}, metric dropped"
                )
                continue
            accepted = self.table.merge_operator_metric(metric, run.generation)
            if track:
                (run.merged if accepted else run.stale_skipped).append(metric.article)

    def _merge_offer_deltas(
        self, run: PipelineRun, offers: tuple[OfferMetric, ...], deltas: dict[str, Delta]
    ) -> None:
        for offer in offers:
            changes: dict[str, Any] = {}
            for stage in MERGE_ORDER:
                fields = deltas[stage].get(offer.article)
                if not fields:
                    continue
                owned = STAGE_FIELDS[stage]
                changes.update({k: v for k, v in fields.items() if k in owned})
            if not changes:
                continue
            if self.table.merge_fields(offer.article, changes, run.generation):
                run.merged.append(offer.article)
            else:
                run.stale_skipped.append(offer.article)

        if run.stale_skipped:
            logger.info(
                f"Pipeline gen {run.generation}: {len(run.stale_skipped)} stale merges discarded"
            )

    async def _run_operator_scope(self, run: PipelineRun, scope: RunScope, today: date) -> None:
        offer = self.table.by_offer_id(scope.offer_id)
        if offer is None:
            logger.warning(f"Scoped run: offer {scope.offer_id} not loaded")
            return
        assignments = tuple(
            a for a in self.assignments.for_offer(scope.offer_id) if a.operator_id == scope.operator_id
        )
        if not assignments:
            logger.info(f"Scoped run: no live assignments for {scope.operator_id} on {scope.offer_id}")
            return

        mapping = dict(self.table.mappings)
        trackers = {offer.offer_id: mapping[offer.article]} if mapping.get(offer.article) else {}
        statuses, leads = await asyncio.gather(
            self._run_stage("statuses", lambda: self.statuses.run(assignments, trackers, today)),
            self._run_stage(
                "leads",
                lambda: self.leads.run_operator(
                    offer, scope.operator_id, mapping, assignments, today=today
                ),
            ),
        )
        run.stages = {"statuses": statuses, "leads": leads}

        if statuses.ok:
            for assignment_id, status in statuses.value.items():
                if assignment_id in self.assignments:
                    self.table.merge_status(assignment_id, status, run.generation)
        if leads.ok:
            self._merge_operator_metrics(run, leads.value.values(), track=True)

    async def _run_all_operators(self, run: PipelineRun, today: date) -> None:
        """Per-operator metrics for every live assignment, offer metrics untouched."""
        assignments = tuple(self.assignments.all())
        offers = self.table.snapshot({a.offer_id for a in assignments})
        if not offers:
            return
        mapping = dict(self.table.mappings)
        leads = await self._run_stage(
            "leads", lambda: self.leads.run_operators(offers, mapping, assignments, today=today)
        )
        run.stages = {"leads": leads}
        if leads.ok:
            self._merge_operator_metrics(run, leads.value.values(), track=True)
