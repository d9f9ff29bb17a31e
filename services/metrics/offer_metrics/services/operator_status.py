"""Operator spend status per assignment.

- active: at least one source spent today
- not_configured: no source ids, or no spend today (``since`` = day after last spend)
- not_in_tracker: none of the assignment's sources appear in the tracker
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import date, timedelta

from offer_metrics.models import OperatorAssignment, OperatorStatus, OperatorStatusCode
from offer_metrics.services.forecast import parse_day
from offer_metrics.services.query_client import AnalyticsQueryClient, sql_in_list
from offer_metrics.settings import get_settings

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True)
class SpendRecord:
    last_spend: date | None
    spend_today: float


def build_spend_query(source_ids: Iterable[str], tracker_ids: Iterable[str], today: date) -> str:
    return f"""
        SELECT
            source_id_tracker,
            offer_id_tracker,
            MAX(CASE WHEN cost > 0 THEN adv_date END) AS last_spend,
            SUM(CASE WHEN adv_date = '{today.isoformat()}' THEN cost ELSE 0 END) AS spend_today
        FROM ads_collection
        WHERE source_id_tracker IN ({sql_in_list(source_ids)})
            AND offer_id_tracker IN ({sql_in_list(tracker_ids)})
        GROUP BY source_id_tracker, offer_id_tracker
    """


def resolve_status(
    source_ids: Iterable[str],
    tracker_id: str | None,
    spend: Mapping[tuple[str, str], SpendRecord],
    today: date,
) -> OperatorStatus:
    """Status of one assignment from the bulk spend lookup."""
    source_ids = list(source_ids)
    if not source_ids:
        return OperatorStatus(OperatorStatusCode.NOT_CONFIGURED, message="No source ids")

    found = False
    spent_today = False
    last: date | None = None
    for source_id in source_ids:
        record = spend.get((source_id, tracker_id or ""))
        if record is None:
            continue
        found = True
        if record.spend_today > 0:
            spent_today = True
        if record.last_spend and (last is None or record.last_spend > last):
            last = record.last_spend

    if not found:
        return OperatorStatus(OperatorStatusCode.NOT_IN_TRACKER, message="Not in tracker")
    if spent_today or last == today:
        return OperatorStatus(OperatorStatusCode.ACTIVE, message="Active")
    if last is not None:
        since = last + timedelta(days=1)
        return OperatorStatus(
            OperatorStatusCode.NOT_CONFIGURED, since=since, message=f"No spend since {since.isoformat()}"
        )
    return OperatorStatus(OperatorStatusCode.NOT_CONFIGURED, message="No spend")


class OperatorStatusResolver:
    """Bulk spend lookup for a set of assignments."""

    def __init__(self, client: AnalyticsQueryClient, *, chunk_size: int | None = None):
        self.client = client
        self.chunk_size = chunk_size or get_settings().status_chunk_size

    async def fetch_spend(
        self, source_ids: list[str], tracker_ids: list[str], today: date
    ) -> dict[tuple[str, str], SpendRecord]:
        chunks = [source_ids[i : i + self.chunk_size] for i in range(0, len(source_ids), self.chunk_size)]
        results = await asyncio.gather(
            *[
                self.client.query(build_spend_query(chunk, tracker_ids, today), label="statuses")
                for chunk in chunks
            ]
        )
        spend: dict[tuple[str, str], SpendRecord] = {}
        for result in results:
            for row in result.rows:
                source_id = str(row.get("source_id_tracker") or "")
                tracker_id = str(row.get("offer_id_tracker") or "")
                if not source_id or not tracker_id:
                    continue
                spend[(source_id, tracker_id)] = SpendRecord(
                    last_spend=parse_day(row.get("last_spend")),
                    spend_today=float(row.get("spend_today") or 0),
                )
        return spend

    async def run(
        self,
        assignments: Iterable[OperatorAssignment],
        tracker_by_offer_id: Mapping[str, str],
        today: date | None = None,
    ) -> dict[str, OperatorStatus]:
        """Statuses keyed by assignment id.

        Args:
            assignments: Live assignments to resolve.
            tracker_by_offer_id: offer id -> tracker offer id.
            today: Override for "today".
        """
        today = today or date.today()
        assignments = [a for a in assignments if not a.archived]
        if not assignments:
            return {}

        source_ids = sorted({s for a in assignments for s in a.source_ids})
        tracker_ids = sorted(
            {tracker_by_offer_id[a.offer_id] for a in assignments if tracker_by_offer_id.get(a.offer_id)}
        )
        spend: dict[tuple[str, str], SpendRecord] = {}
        if source_ids and tracker_ids:
            spend = await self.fetch_spend(source_ids, tracker_ids, today)

        statuses = {
            a.id: resolve_status(a.source_ids, tracker_by_offer_id.get(a.offer_id), spend, today)
            for a in assignments
        }
        counts: dict[str, int] = {}
        for status in statuses.values():
            counts[status.status.value] = counts.get(status.status.value, 0) + 1
        logger.info(f"Operator statuses: {len(statuses)} assignments {counts}")
        return statuses
