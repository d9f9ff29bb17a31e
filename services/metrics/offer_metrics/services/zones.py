"""Zone price calculator.

Reads effectiveness thresholds per article from ``offers_collection`` and
converts them into lead prices per zone. Threshold keys map onto zones as
``first=green, second=gold, third=pink, fourth=red`` and a single scale rule
applies to all four: currency thresholds are prices already, percentage
thresholds are a share of the invested price.

Zone prices are not forced to be monotonic; each zone is converted on its own.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from offer_metrics.models import ZONE_ORDER, OfferMetric, Zone, ZonePrices
from offer_metrics.services.query_client import AnalyticsQueryClient, sql_in_list
from offer_metrics.settings import get_settings

logger = logging.getLogger("uvicorn.error")

CURRENCY_ROI_TYPE = "UAH"
PERCENT_ROI_TYPE = "%"

# Threshold key -> zone
THRESHOLD_KEYS: dict[str, Zone] = {
    "first": Zone.GREEN,
    "second": Zone.GOLD,
    "third": Zone.PINK,
    "fourth": Zone.RED,
}


@dataclass
class ZoneRecord:
    """Zone data for one article as read from the collection."""

    article: str
    thresholds: ZonePrices = field(default_factory=ZonePrices)
    prices: ZonePrices = field(default_factory=ZonePrices)
    roi_type: str | None = None
    approve_percent: float | None = None
    sold_percent: float | None = None

    @property
    def refusal_percent(self) -> float | None:
        if self.approve_percent is None:
            return None
        return round(100 - self.approve_percent, 2)

    @property
    def no_pickup_percent(self) -> float | None:
        if self.sold_percent is None:
            return None
        return round(100 - self.sold_percent, 2)


def zone_price(threshold: float | None, roi_type: str | None, invest_price: float | None) -> float | None:
    """Lead price for one zone threshold, rounded to cents.

    Currency thresholds are returned as-is; percentage thresholds are
    ``invest_price * threshold / 100``. Missing inputs give ``None``.
    """
    if threshold is None:
        return None
    if (roi_type or CURRENCY_ROI_TYPE) == PERCENT_ROI_TYPE:
        if invest_price is None:
            return None
        return round(invest_price * threshold / 100, 2)
    return round(threshold, 2)


def zone_prices(
    thresholds: ZonePrices, roi_type: str | None, invest_price: float | None
) -> ZonePrices:
    return ZonePrices(
        **{zone.value: zone_price(thresholds.get(zone), roi_type, invest_price) for zone in ZONE_ORDER}
    )


def classify_zone(actual_roi: float | None, thresholds: ZonePrices) -> Zone | None:
    """Best zone whose threshold is <= ``actual_roi`` (inclusive), else SOS.

    Returns ``None`` when ROI is unknown or no threshold is set.
    """
    if actual_roi is None:
        return None
    known = [(zone, thresholds.get(zone)) for zone in ZONE_ORDER if thresholds.get(zone) is not None]
    if not known:
        return None
    current = Zone.SOS
    for zone, threshold in known:
        if actual_roi >= threshold:
            current = zone
    return current


def _json_field(raw: Any) -> dict[str, Any] | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        return raw
    value = json.loads(raw)
    return value if isinstance(value, dict) else None


def _to_float(raw: Any) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _pct(raw: Any) -> float | None:
    value = _to_float(raw)
    return round(value, 2) if value is not None else None


def parse_zone_row(row: Mapping[str, Any]) -> ZoneRecord:
    """Build a ``ZoneRecord`` from one collection row.

    Unparseable JSON columns leave the zones null for this article only.
    """
    article = str(row.get("salesdrive_sku") or "").strip()
    record = ZoneRecord(
        article=article,
        approve_percent=_pct(row.get("approve_percent_oper")),
        sold_percent=_pct(row.get("sold_percent_oper")),
    )
    try:
        zones = _json_field(row.get("effectivity_zone"))
        meta = _json_field(row.get("last_result_conversions")) or {}
    except (ValueError, TypeError) as e:
        logger.warning(f"Zones: bad JSON for {article}: {e}")
        return record

    if not zones:
        return record

    nested = meta.get("effectivity_zone") if isinstance(meta.get("effectivity_zone"), dict) else meta
    record.roi_type = nested.get("roi_type") or CURRENCY_ROI_TYPE
    record.thresholds = ZonePrices(
        **{zone.value: _to_float(zones.get(key)) for key, zone in THRESHOLD_KEYS.items()}
    )
    record.prices = zone_prices(
        record.thresholds, record.roi_type, _to_float(row.get("av_offer_invest_price"))
    )
    return record


def build_zones_query(articles: Iterable[str]) -> str:
    return f"""
        SELECT
            salesdrive_sku,
            offer_name,
            effectivity_zone,
            last_result_conversions,
            av_offer_invest_price,
            approve_percent_oper,
            sold_percent_oper
        FROM offers_collection
        WHERE salesdrive_sku IN ({sql_in_list(articles)})
    """


def zones_delta(
    offers: Iterable[OfferMetric], records: Mapping[str, ZoneRecord]
) -> dict[str, dict[str, Any]]:
    """Field changes for the offers that have a zone row."""
    delta: dict[str, dict[str, Any]] = {}
    for offer in offers:
        record = records.get(offer.article)
        if record is None:
            continue
        delta[offer.article] = {
            "zone_prices": record.prices,
            "zone_thresholds": record.thresholds,
            "roi_type": record.roi_type,
            "approve_percent": record.approve_percent,
            "sold_percent": record.sold_percent,
            "refusal_percent": record.refusal_percent,
            "no_pickup_percent": record.no_pickup_percent,
        }
    return delta


class ZonePriceCalculator:
    """Batched zone lookup for a set of offers."""

    def __init__(self, client: AnalyticsQueryClient, *, batch_size: int | None = None):
        self.client = client
        self.batch_size = batch_size or get_settings().zones_batch_size

    async def fetch(self, articles: list[str]) -> dict[str, ZoneRecord]:
        """Zone records keyed by article. Query errors propagate."""
        unique = sorted({a.strip() for a in articles if a and a.strip()})
        records: dict[str, ZoneRecord] = {}
        if not unique:
            return records

        for start in range(0, len(unique), self.batch_size):
            chunk = unique[start : start + self.batch_size]
            result = await self.client.query(build_zones_query(chunk), label="zones")
            for row in result.rows:
                record = parse_zone_row(row)
                if record.article:
                    records[record.article] = record
        return records

    async def run(
        self, offers: tuple[OfferMetric, ...]
    ) -> tuple[dict[str, ZoneRecord], dict[str, dict[str, Any]]]:
        records = await self.fetch([o.article for o in offers])
        delta = zones_delta(offers, records)
        logger.info(f"Zones: {len(records)} rows for {len(offers)} offers")
        return records, delta
