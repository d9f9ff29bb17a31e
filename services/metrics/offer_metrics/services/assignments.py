"""Live operator assignment table.

Shared between the pipeline (reads) and the reconciler (writes). Records are
replaced whole, never edited in place.
"""

from __future__ import annotations

from collections.abc import Iterable

from offer_metrics.models import OperatorAssignment


class AssignmentTable:
    def __init__(self, assignments: Iterable[OperatorAssignment] = ()):
        self._by_id: dict[str, OperatorAssignment] = {}
        self._pending: set[str] = set()
        self.load(assignments)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, assignment_id: object) -> bool:
        return assignment_id in self._by_id

    def load(self, assignments: Iterable[OperatorAssignment]) -> None:
        """Replace the whole table (archived rows are not live)."""
        self._by_id = {a.id: a for a in assignments if not a.archived}
        self._pending.clear()

    def get(self, assignment_id: str) -> OperatorAssignment | None:
        return self._by_id.get(assignment_id)

    def all(self) -> list[OperatorAssignment]:
        return list(self._by_id.values())

    def for_offer(self, offer_id: str) -> list[OperatorAssignment]:
        return [a for a in self._by_id.values() if a.offer_id == offer_id]

    def by_offer(self) -> dict[str, list[OperatorAssignment]]:
        grouped: dict[str, list[OperatorAssignment]] = {}
        for a in self._by_id.values():
            grouped.setdefault(a.offer_id, []).append(a)
        return grouped

    def live_count(self, offer_id: str) -> int:
        return sum(1 for a in self._by_id.values() if a.offer_id == offer_id)

    def has_operator(self, offer_id: str, operator_id: str) -> bool:
        return any(
            a.offer_id == offer_id and a.operator_id == operator_id for a in self._by_id.values()
        )

    def find_pair(self, assignment: OperatorAssignment) -> OperatorAssignment | None:
        """Live entry with the same (offer, operator, source), other than ``assignment`` itself."""
        for a in self._by_id.values():
            if a.id != assignment.id and a.pair_key == assignment.pair_key:
                return a
        return None

    def put(self, assignment: OperatorAssignment) -> None:
        self._by_id[assignment.id] = assignment

    def remove(self, assignment_id: str) -> OperatorAssignment | None:
        self._pending.discard(assignment_id)
        return self._by_id.pop(assignment_id, None)

    # Pending flags (assignment waiting for its scoped pipeline run)

    def mark_pending(self, assignment_id: str) -> None:
        if assignment_id in self._by_id:
            self._pending.add(assignment_id)

    def clear_pending(self, assignment_id: str) -> None:
        self._pending.discard(assignment_id)

    def is_pending(self, assignment_id: str) -> bool:
        return assignment_id in self._pending

    @property
    def pending(self) -> frozenset[str]:
        return frozenset(self._pending)

    def row_needs_more_height(self, offer_id: str) -> bool:
        """True when the offer row has at least one live assignment to show."""
        return self.live_count(offer_id) > 0
