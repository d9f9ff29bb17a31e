"""Stock aggregator: catalog export -> stock per base article.

The stock feed is one large CSV document (product catalog export) fetched in
full on every refresh; there is no delta endpoint. Each row is one SKU
modification. SKUs map many-to-one onto catalog articles by taking the part
before the first hyphen ("C01063-XL" -> "C01063").

Rules:
- Rows in the excluded category are dropped from totals entirely.
- Timeouts, network errors and 5xx responses are retried with backoff.
- A malformed document (missing columns, non-numeric quantity/price) fails
  the stock stage only (StockFeedError).
"""

from __future__ import annotations

import csv
import io
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from offer_metrics.models import OfferMetric
from offer_metrics.services.errors import StockFeedError, TransientQueryError
from offer_metrics.services.retry import RetryPolicy
from offer_metrics.settings import get_settings

logger = logging.getLogger("uvicorn.error")

REQUIRED_COLUMNS = ("sku", "quantity")


@dataclass
class StockSnapshot:
    """Parsed stock feed, keyed by base article."""

    totals: dict[str, int] = field(default_factory=dict)
    modifications: dict[str, list[str]] = field(default_factory=dict)
    categories: dict[str, str] = field(default_factory=dict)
    excluded_rows: int = 0


def base_article(sku: str) -> str:
    """Catalog article for a raw SKU: substring before the first hyphen."""
    return sku.strip().split("-", 1)[0]


def parse_stock_feed(text: str, excluded_category: str | None = None) -> StockSnapshot:
    """Parse the CSV catalog export.

    Columns: ``sku,name,quantity,price,category`` (``name``, ``price`` and
    ``category`` are optional).

    Raises:
        StockFeedError: On a missing header/column or a non-numeric value.
    """
    reader = csv.DictReader(io.StringIO(text))
    header = [h.strip().lower() for h in (reader.fieldnames or [])]
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise StockFeedError(f"Stock feed is missing columns: {', '.join(missing)}")
    reader.fieldnames = header

    excluded = (excluded_category or "").strip().lower()
    snapshot = StockSnapshot()

    for line_no, row in enumerate(reader, start=2):
        sku = (row.get("sku") or "").strip()
        if not sku:
            continue
        category = (row.get("category") or "").strip()
        if excluded and category.lower() == excluded:
            snapshot.excluded_rows += 1
            continue

        quantity = _parse_int(row.get("quantity"), line_no, "quantity")
        price = _parse_float(row.get("price"), line_no, "price")
        name = (row.get("name") or "").strip() or sku

        article = base_article(sku)
        snapshot.totals[article] = snapshot.totals.get(article, 0) + quantity
        snapshot.modifications.setdefault(article, []).append(
            f"{name} - {quantity} pcs - {price:.2f}"
        )
        if category and article not in snapshot.categories:
            snapshot.categories[article] = category

    return snapshot


def _parse_int(raw: Any, line_no: int, column: str) -> int:
    value = str(raw if raw is not None else "").strip()
    if not value:
        return 0
    try:
        return int(float(value))
    except ValueError as e:
        raise StockFeedError(f"Line {line_no}: {column}={value!r} is not a number") from e


def _parse_float(raw: Any, line_no: int, column: str) -> float:
    value = str(raw if raw is not None else "").strip().replace(",", ".")
    if not value:
        return 0.0
    try:
        return float(value)
    except ValueError as e:
        raise StockFeedError(f"Line {line_no}: {column}={value!r} is not a number") from e


def stock_delta(
    offers: Iterable[OfferMetric], snapshot: StockSnapshot
) -> dict[str, dict[str, Any]]:
    """Field changes for the offers present in the feed."""
    delta: dict[str, dict[str, Any]] = {}
    for offer in offers:
        article = offer.article
        if article not in snapshot.totals:
            continue
        delta[article] = {
            "stock_quantity": snapshot.totals[article],
            "category": snapshot.categories.get(article, offer.category),
            "stock_modifications": tuple(snapshot.modifications.get(article, ())),
        }
    return delta


class StockAggregator:
    """Fetches the catalog export and aggregates stock per article."""

    def __init__(
        self,
        feed_url: str | None = None,
        *,
        excluded_category: str | None = None,
        timeout: float = 120.0,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.feed_url = feed_url if feed_url is not None else settings.stock_feed_url
        self.excluded_category = (
            excluded_category if excluded_category is not None else settings.stock_excluded_category
        )
        self.timeout = timeout
        self.retry = retry or RetryPolicy(
            max_retries=settings.analytics_max_retries,
            base_delay_s=settings.analytics_backoff_base_s,
        )
        self._transport = transport

    async def fetch_feed(self) -> str:
        """Download the full export.

        Timeouts, network errors and 5xx responses are retried through the
        shared policy; other HTTP errors propagate on the first attempt.
        """
        if not self.feed_url:
            raise StockFeedError("STOCK_FEED_URL is not set")
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:

            async def _attempt() -> str:
                return await self._get_once(client)

            return await self.retry.run(_attempt, label="stock")

    async def _get_once(self, client: httpx.AsyncClient) -> str:
        try:
            resp = await client.get(self.feed_url)
        except httpx.TimeoutException as e:
            raise TransientQueryError(f"Stock feed timeout after {self.timeout:.0f}s") from e
        except httpx.TransportError as e:
            raise TransientQueryError(f"Stock feed network error: {e}") from e

        if self.retry.is_retryable_status(resp.status_code):
            raise TransientQueryError(f"Stock feed HTTP {resp.status_code}", status_code=resp.status_code)
        if resp.status_code != 200:
            logger.error(f"Stock feed error: {resp.status_code} - {resp.text[:200]}")
        resp.raise_for_status()
        return resp.text

    async def run(self, offers: tuple[OfferMetric, ...]) -> tuple[StockSnapshot, dict[str, dict[str, Any]]]:
        """Fetch, parse and build the stock delta for ``offers``."""
        text = await self.fetch_feed()
        snapshot = parse_stock_feed(text, self.excluded_category)
        delta = stock_delta(offers, snapshot)
        logger.info(
            f"Stock feed: {len(snapshot.totals)} articles, {snapshot.excluded_rows} excluded rows, "
            f"{len(delta)}/{len(offers)} offers matched"
        )
        return snapshot, delta
