"""Real-time reconciler for pushed assignment changes.

Delivery is at-least-once with no ordering across ids, so every event is
merged idempotently:

- Created: insert; replaces a live entry with the same (offer, operator,
  source); schedules an operator-scoped pipeline run and marks the
  assignment pending until that run finishes.
- Updated: replace by id; unknown id is a no-op. Re-scopes the operator
  when its source ids changed or a run is still pending, so the latest
  source ids win.
- Deleted: remove by id; unknown id is a no-op. Drops the assignment's
  status and re-scopes (or drops) the operator's metrics.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from offer_metrics.models import ChangeEvent, ChangeKind, OperatorAssignment
from offer_metrics.services.assignments import AssignmentTable
from offer_metrics.services.pipeline import PipelineOrchestrator, PipelineRun, RunMode, RunScope

logger = logging.getLogger("uvicorn.error")


@dataclass
class ReconcileOutcome:
    changed: bool
    topology_changed: bool = False
    run_task: asyncio.Task[PipelineRun] | None = None


class RealtimeReconciler:
    def __init__(self, assignments: AssignmentTable, orchestrator: PipelineOrchestrator):
        self.assignments = assignments
        self.orchestrator = orchestrator
        # Latest scoped run per assignment id; only that run clears the pending flag.
        self._latest_runs: dict[str, asyncio.Task[PipelineRun]] = {}

    def apply(self, event: ChangeEvent) -> ReconcileOutcome:
        """Merge one event into the live tables. Must be called from the event loop."""
        if event.kind is ChangeKind.CREATED:
            return self._created(event.assignment)
        if event.kind is ChangeKind.UPDATED:
            return self._updated(event.assignment)
        return self._deleted(event.assignment.id)

    def _counts(self, offer_ids: Iterable[str]) -> dict[str, int]:
        return {offer_id: self.assignments.live_count(offer_id) for offer_id in offer_ids if offer_id}

    def _topology_changed(self, before: dict[str, int]) -> bool:
        after = self._counts(before)
        return any((before[k] == 0) != (after[k] == 0) for k in before)

    def _created(self, assignment: OperatorAssignment) -> ReconcileOutcome:
        existing = self.assignments.get(assignment.id)
        if existing == assignment:
            logger.info(f"Reconciler: duplicate create {assignment.id} ignored")
            return ReconcileOutcome(changed=False)

        superseded = self.assignments.find_pair(assignment)
        touched = {assignment.offer_id}
        if existing:
            touched.add(existing.offer_id)
        before = self._counts(touched)

        if superseded is not None:
            self.assignments.remove(superseded.id)
            self.orchestrator.table.drop_status(superseded.id)
            logger.info(f"Reconciler: {assignment.id} supersedes {superseded.id}")
        self.assignments.put(assignment)

        task = self._schedule(assignment)
        return ReconcileOutcome(
            changed=True, topology_changed=self._topology_changed(before), run_task=task
        )

    def _updated(self, assignment: OperatorAssignment) -> ReconcileOutcome:
        existing = self.assignments.get(assignment.id)
        if existing is None:
            logger.info(f"Reconciler: update for unknown {assignment.id} ignored")
            return ReconcileOutcome(changed=False)
        if existing == assignment:
            return ReconcileOutcome(changed=False)

        before = self._counts({existing.offer_id, assignment.offer_id})
        self.assignments.put(assignment)

        moved = (existing.offer_id, existing.operator_id) != (assignment.offer_id, assignment.operator_id)
        if moved:
            self._rescope_or_drop(existing)

        task = None
        if (
            moved
            or self.assignments.is_pending(assignment.id)
            or set(existing.source_ids) != set(assignment.source_ids)
        ):
            task = self._schedule(assignment)
        return ReconcileOutcome(
            changed=True, topology_changed=self._topology_changed(before), run_task=task
        )

    def _deleted(self, assignment_id: str) -> ReconcileOutcome:
        removed = self.assignments.get(assignment_id)
        if removed is None:
            return ReconcileOutcome(changed=False)

        before = self._counts({removed.offer_id})
        self.assignments.remove(assignment_id)
        self._latest_runs.pop(assignment_id, None)
        self.orchestrator.table.drop_status(assignment_id)
        task = self._rescope_or_drop(removed)
        return ReconcileOutcome(
            changed=True, topology_changed=self._topology_changed(before), run_task=task
        )

    def _rescope_or_drop(self, gone: OperatorAssignment) -> asyncio.Task[PipelineRun] | None:
        """Re-sum the operator's metrics without ``gone``, or drop them if nothing is left."""
        remaining = [
            a for a in self.assignments.for_offer(gone.offer_id) if a.operator_id == gone.operator_id
        ]
        if remaining:
            return self._schedule(remaining[0])
        offer = self.orchestrator.table.by_offer_id(gone.offer_id)
        if offer is not None:
            self.orchestrator.table.drop_operator_metric(
                offer.article, gone.operator_id, self.orchestrator.next_generation()
            )
        return None

    def _schedule(self, assignment: OperatorAssignment) -> asyncio.Task[PipelineRun]:
        self.assignments.mark_pending(assignment.id)
        scope = RunScope(offer_id=assignment.offer_id, operator_id=assignment.operator_id)
        task = asyncio.create_task(self.orchestrator.run(RunMode.SCOPED, scope))
        self._latest_runs[assignment.id] = task

        def _done(t: asyncio.Task[PipelineRun]) -> None:
            if self._latest_runs.get(assignment.id) is t:
                del self._latest_runs[assignment.id]
                self.assignments.clear_pending(assignment.id)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Reconciler: scoped run for {assignment.id} failed: {t.exception()}")

        task.add_done_callback(_done)
        return task
