"""Operator assignment model and change events.

An assignment links an operator ("buyer") to an offer and to the tracker
source ids that scope its aggregation queries. Assignments are created and
archived by the external catalog service; this service only reads them and
merges pushed change events.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class OperatorAssignment:
    """A live operator <-> offer link."""

    id: str
    offer_id: str
    operator_id: str
    source: str = ""
    source_ids: tuple[str, ...] = ()
    archived: bool = False
    created_at: str | None = None

    @property
    def pair_key(self) -> tuple[str, str, str]:
        """Identity of a (re)created assignment for the same operator/source."""
        return (self.offer_id, self.operator_id, self.source)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["source_ids"] = list(self.source_ids)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperatorAssignment":
        source_ids = data.get("source_ids") or ()
        if isinstance(source_ids, str):
            source_ids = [s for s in source_ids.split(",") if s.strip()]
        return cls(
            id=str(data["id"]),
            offer_id=str(data["offer_id"]),
            operator_id=str(data.get("operator_id") or data.get("buyer_id") or ""),
            source=str(data.get("source") or ""),
            source_ids=tuple(str(s).strip() for s in source_ids if str(s).strip()),
            archived=bool(data.get("archived", False)),
            created_at=data.get("created_at"),
        )


@dataclass(frozen=True)
class Operator:
    """Operator roster entry."""

    id: str
    name: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Operator":
        return cls(id=str(data["id"]), name=str(data.get("name") or ""))


class OperatorStatusCode(Enum):
    ACTIVE = "active"
    NOT_CONFIGURED = "not_configured"
    NOT_IN_TRACKER = "not_in_tracker"


@dataclass(frozen=True)
class OperatorStatus:
    """Spend status of one assignment."""

    status: OperatorStatusCode
    since: date | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "since": self.since.isoformat() if self.since else None,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OperatorStatus":
        since = data.get("since")
        return cls(
            status=OperatorStatusCode(data["status"]),
            since=date.fromisoformat(since) if since else None,
            message=data.get("message") or "",
        )


@dataclass(frozen=True)
class PerOperatorMetric:
    """Leads/cost for one operator on one offer, scoped by its source ids."""

    article: str
    operator_id: str
    leads_by_period: dict[int, float] = field(default_factory=dict)
    cost_by_period: dict[int, float] = field(default_factory=dict)
    cpl_by_period: dict[int, float] = field(default_factory=dict)
    active_days_leads: float = 0.0
    active_days_cost: float = 0.0
    active_days_cpl: float = 0.0
    active_days: int = 0
    consecutive_active_days: int = 0
    last_active_date: date | None = None


class ChangeKind(Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class ChangeEvent:
    """One pushed assignment change. Deleted events may carry only the id."""

    kind: ChangeKind
    assignment: OperatorAssignment

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent":
        """Parse a change-feed payload.

        Accepts ``{"type": "INSERT"|"UPDATE"|"DELETE"|"created"|..., "record": {...},
        "old_record": {...}}``. Raises ``ValueError`` on unknown types.
        """
        raw_type = str(payload.get("type") or payload.get("eventType") or "").strip().lower()
        kind = _EVENT_TYPES.get(raw_type)
        if kind is None:
            raise ValueError(f"Unknown change event type: {raw_type!r}")

        record = payload.get("record") or payload.get("new") or {}
        if kind is ChangeKind.DELETED:
            record = payload.get("old_record") or payload.get("old") or record
        if not record or "id" not in record:
            raise ValueError("Change event has no assignment id")

        if kind is ChangeKind.DELETED and "offer_id" not in record:
            return cls(kind=kind, assignment=OperatorAssignment(id=str(record["id"]), offer_id="", operator_id=""))

        assignment = OperatorAssignment.from_dict(record)
        # An UPDATE that archives the row is a removal from the live table.
        if kind is ChangeKind.UPDATED and assignment.archived:
            kind = ChangeKind.DELETED
        return cls(kind=kind, assignment=assignment)


_EVENT_TYPES = {
    "insert": ChangeKind.CREATED,
    "created": ChangeKind.CREATED,
    "update": ChangeKind.UPDATED,
    "updated": ChangeKind.UPDATED,
    "delete": ChangeKind.DELETED,
    "deleted": ChangeKind.DELETED,
}
