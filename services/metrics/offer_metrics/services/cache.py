"""Session cache for the last full refresh.

Five slices (offer metrics, operator roster, status map, assignment list,
article -> tracker mapping) are stored under independent keys, followed by
the schema version and the write timestamp.

A read is a hit only when the stored version equals the running version,
``now - timestamp < ttl`` and all five slices decode. A version mismatch
purges the whole prefix; stale entries are never migrated. Decode problems
are treated as a miss and never raised to the caller. A write that cannot
serialize a slice deletes that slice's old payload, so an entry is never
assembled from two refreshes.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from offer_metrics.models import Operator, OperatorAssignment, OperatorStatus, OfferMetric
from offer_metrics.settings import get_settings

logger = logging.getLogger("uvicorn.error")

SLICES = ("metrics", "operators", "statuses", "assignments", "mappings")
KEY_TIMESTAMP = "timestamp"
KEY_VERSION = "version"


class CacheStorage(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...


@dataclass
class CacheSnapshot:
    """Everything needed to restore the live tables without refetching."""

    metrics: list[OfferMetric] = field(default_factory=list)
    operators: list[Operator] = field(default_factory=list)
    statuses: dict[str, OperatorStatus] = field(default_factory=dict)
    assignments: list[OperatorAssignment] = field(default_factory=list)
    mappings: dict[str, str] = field(default_factory=dict)
    written_at_ms: int | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


_ENCODERS: dict[str, Callable[[CacheSnapshot], Any]] = {
    "metrics": lambda s: [m.to_dict() for m in s.metrics],
    "operators": lambda s: [{"id": o.id, "name": o.name} for o in s.operators],
    "statuses": lambda s: {k: v.to_dict() for k, v in s.statuses.items()},
    "assignments": lambda s: [a.to_dict() for a in s.assignments],
    "mappings": lambda s: dict(s.mappings),
}

_DECODERS: dict[str, Callable[[Any], Any]] = {
    "metrics": lambda raw: [OfferMetric.from_dict(m) for m in raw],
    "operators": lambda raw: [Operator.from_dict(o) for o in raw],
    "statuses": lambda raw: {k: OperatorStatus.from_dict(v) for k, v in raw.items()},
    "assignments": lambda raw: [OperatorAssignment.from_dict(a) for a in raw],
    "mappings": lambda raw: {str(k): str(v) for k, v in raw.items()},
}


class CacheManager:
    """Versioned, TTL-bounded snapshot cache over a ``CacheStorage``."""

    def __init__(
        self,
        storage: CacheStorage,
        *,
        version: int | None = None,
        ttl_s: int | None = None,
        prefix: str | None = None,
        clock: Callable[[], int] = _now_ms,
    ):
        settings = get_settings()
        self.storage = storage
        self.version = version if version is not None else settings.cache_version
        self.ttl_s = ttl_s if ttl_s is not None else settings.cache_ttl_s
        self.prefix = prefix if prefix is not None else settings.cache_key_prefix
        self.clock = clock

    @property
    def ttl_ms(self) -> int:
        return self.ttl_s * 1000

    def key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    async def clear(self) -> None:
        removed = await self.storage.delete_prefix(self.prefix)
        logger.info(f"Cache cleared ({removed} keys)")

    async def read_snapshot(self) -> CacheSnapshot | None:
        """Cached snapshot, or None on any kind of miss."""
        try:
            return await self._read()
        except Exception as e:
            logger.warning(f"Cache read failed, treating as miss: {e}")
            return None

    async def _read(self) -> CacheSnapshot | None:
        raw_version = await self.storage.get(self.key(KEY_VERSION))
        if raw_version is None:
            logger.info("Cache miss: empty")
            return None
        if raw_version != str(self.version):
            logger.info(f"Cache miss: version {raw_version} != {self.version}, clearing")
            await self.clear()
            return None

        raw_ts = await self.storage.get(self.key(KEY_TIMESTAMP))
        if raw_ts is None:
            logger.info("Cache miss: no timestamp")
            return None
        written_at = int(raw_ts)
        age_ms = self.clock() - written_at
        if age_ms >= self.ttl_ms:
            logger.info(f"Cache miss: expired ({age_ms // 1000}s old)")
            return None

        snapshot = CacheSnapshot(written_at_ms=written_at)
        for name in SLICES:
            raw = await self.storage.get(self.key(name))
            if raw is None:
                logger.info(f"Cache miss: slice '{name}' missing")
                return None
            try:
                setattr(snapshot, name, _DECODERS[name](json.loads(raw)))
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                logger.warning(f"Cache miss: slice '{name}' undecodable: {e}")
                return None

        logger.info(f"Cache hit: {len(snapshot.metrics)} offers ({age_ms // 1000}s old)")
        return snapshot

    async def write_snapshot(self, snapshot: CacheSnapshot) -> list[str]:
        """Write each slice independently, then version and timestamp.

        A slice that fails to serialize is skipped and its previous payload is
        deleted, so the snapshot reads as a miss until the next complete write.
        Returns the names of the slices that were written.
        """
        written: list[str] = []
        for name in SLICES:
            try:
                payload = json.dumps(_ENCODERS[name](snapshot), ensure_ascii=False)
            except (TypeError, ValueError) as e:
                logger.warning(f"Cache: slice '{name}' not serializable, skipped: {e}")
                await self.storage.delete(self.key(name))
                continue
            await self.storage.set(self.key(name), payload, self.ttl_s)
            written.append(name)

        now = self.clock()
        await self.storage.set(self.key(KEY_VERSION), str(self.version), self.ttl_s)
        await self.storage.set(self.key(KEY_TIMESTAMP), str(now), self.ttl_s)
        snapshot.written_at_ms = now
        logger.info(f"Cache written: {len(written)}/{len(SLICES)} slices")
        return written
