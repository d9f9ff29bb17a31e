import pytest

from offer_metrics.stores import redis as redis_store
from offer_metrics.stores.redis import RedisCacheStorage


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the store functions."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value

    async def setex(self, key, ttl, value):
        self.values[key] = value
        self.ttls[key] = ttl

    async def delete(self, *keys):
        removed = sum(1 for k in keys if k in self.values)
        for k in keys:
            self.values.pop(k, None)
        return removed

    async def scan_iter(self, match):
        prefix = match.rstrip("*")
        for key in list(self.values):
            if key.startswith(prefix):
                yield key


@pytest.fixture
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr(redis_store, "_redis", fake)
    return fake


@pytest.mark.asyncio
async def test_set_uses_ttl_when_given(fake_redis):
    storage = RedisCacheStorage()
    await storage.set("offers:version", "3", 300)
    await storage.set("offers:pinned", "x")

    assert await storage.get("offers:version") == "3"
    assert fake_redis.ttls == {"offers:version": 300}


@pytest.mark.asyncio
async def test_delete_prefix_only_touches_prefix(fake_redis):
    storage = RedisCacheStorage()
    for key in ("offers:metrics", "offers:mappings", "other:key"):
        await storage.set(key, "1")

    assert await storage.delete_prefix("offers:") == 2
    assert list(fake_redis.values) == ["other:key"]
    assert await storage.delete_prefix("offers:") == 0


@pytest.mark.asyncio
async def test_uninitialized_store_raises(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(redis_store, "_redis", None)
    with pytest.raises(RuntimeError):
        await RedisCacheStorage().get("offers:version")
