"""Client for the catalog CRUD service.

The catalog service owns offers, operators, assignments and the
article -> tracker offer id mapping. This service only reads them:

- GET /offers              -> [{id, article, offer_name, actual_roi_percent}]
- GET /operators           -> [{id, name}]
- GET /assignments         -> [{id, offer_id, operator_id, source, source_ids, archived, created_at}]
- GET /article-mappings    -> [{article, offer_id}]
"""

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from offer_metrics.models import OfferMetric, Operator, OperatorAssignment
from offer_metrics.settings import get_settings

logger = logging.getLogger("uvicorn.error")


@dataclass
class CatalogData:
    """Base records for a full refresh."""

    offers: list[OfferMetric] = field(default_factory=list)
    operators: list[Operator] = field(default_factory=list)
    assignments: list[OperatorAssignment] = field(default_factory=list)
    mappings: dict[str, str] = field(default_factory=dict)


def parse_offer(data: dict[str, Any]) -> OfferMetric | None:
    article = str(data.get("article") or "").strip()
    if not article:
        return None
    roi = data.get("actual_roi_percent")
    return OfferMetric(
        offer_id=str(data["id"]),
        article=article,
        offer_name=str(data.get("offer_name") or ""),
        actual_roi_percent=float(roi) if roi not in (None, "") else None,
    )


def parse_mappings(payload: Any) -> dict[str, str]:
    """Accept a list of ``{article, offer_id}`` rows or a plain object."""
    if isinstance(payload, dict):
        return {str(k).strip(): str(v).strip() for k, v in payload.items() if k and v}
    mappings: dict[str, str] = {}
    for row in payload or []:
        article = str(row.get("article") or "").strip()
        tracker = str(row.get("offer_id") or row.get("offer_id_tracker") or "").strip()
        if article and tracker:
            mappings[article] = tracker
    return mappings


class CatalogClient:
    """Client for the catalog CRUD endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.catalog_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.catalog_api_key
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url, headers=headers, timeout=30.0, transport=self._transport
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        client = await self._get_client()
        response = await client.get(path, params=params)
        if response.status_code != 200:
            logger.error(f"Catalog API error: {path} {response.status_code} - {response.text[:200]}")
        response.raise_for_status()
        return response.json()

    async def fetch_offers(self) -> list[OfferMetric]:
        offers = [parse_offer(row) for row in await self._get("/offers")]
        return [o for o in offers if o is not None]

    async def fetch_operators(self) -> list[Operator]:
        return [Operator.from_dict(row) for row in await self._get("/operators")]

    async def fetch_assignments(self) -> list[OperatorAssignment]:
        rows = await self._get("/assignments", params={"archived": "false"})
        return [a for a in (OperatorAssignment.from_dict(r) for r in rows) if not a.archived]

    async def fetch_mappings(self) -> dict[str, str]:
        return parse_mappings(await self._get("/article-mappings"))

    async def fetch_all(self) -> CatalogData:
        data = CatalogData(
            offers=await self.fetch_offers(),
            operators=await self.fetch_operators(),
            assignments=await self.fetch_assignments(),
            mappings=await self.fetch_mappings(),
        )
        logger.info(
            f"Catalog: {len(data.offers)} offers, {len(data.operators)} operators, "
            f"{len(data.assignments)} assignments, {len(data.mappings)} mappings"
        )
        return data
