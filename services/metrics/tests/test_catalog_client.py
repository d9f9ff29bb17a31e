import httpx
import pytest

from offer_metrics.services.catalog_client import CatalogClient, parse_mappings, parse_offer


ROUTES = {
    "/offers": [
        {"id": 1, "article": "A1", "offer_name": "Hoodie", "actual_roi_percent": "130.5"},
        {"id": 2, "article": "", "offer_name": "No article"},
    ],
    "/operators": [{"id": "op1", "name": "Dana"}],
    "/assignments": [
        {"id": "a1", "offer_id": "1", "buyer_id": "op1", "source": "fb", "source_ids": "s1, s2"},
        {"id": "a2", "offer_id": "1", "operator_id": "op2", "archived": True},
    ],
    "/article-mappings": [{"article": "A1", "offer_id_tracker": "t1"}],
}


def test_parse_offer_skips_rows_without_article():
    assert parse_offer({"id": 2, "article": " "}) is None
    offer = parse_offer({"id": 1, "article": "A1", "actual_roi_percent": ""})
    assert offer.offer_id == "1"
    assert offer.actual_roi_percent is None


def test_parse_mappings_accepts_both_shapes():
    assert parse_mappings({"A1": "t1"}) == {"A1": "t1"}
    assert parse_mappings([{"article": "A1", "offer_id": "t1"}, {"article": "B2"}]) == {"A1": "t1"}


@pytest.mark.asyncio
async def test_fetch_all_reads_every_collection():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, request.headers.get("authorization")))
        return httpx.Response(200, json=ROUTES[request.url.path])

    client = CatalogClient("http://catalog.test/", "secret", transport=httpx.MockTransport(handler))
    data = await client.fetch_all()
    await client.close()

    assert [o.article for o in data.offers] == ["A1"]
    assert data.offers[0].actual_roi_percent == 130.5
    assert [a.id for a in data.assignments] == ["a1"]
    assert data.assignments[0].operator_id == "op1"
    assert data.assignments[0].source_ids == ("s1", "s2")
    assert data.mappings == {"A1": "t1"}
    assert all(auth == "Bearer secret" for _, auth in seen)


@pytest.mark.asyncio
async def test_http_errors_propagate():
    client = CatalogClient(
        "http://catalog.test", "", transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )
    with pytest.raises(httpx.HTTPStatusError):
        await client.fetch_offers()
