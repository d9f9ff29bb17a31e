#!/usr/bin/env python3
"""One-shot full metrics refresh for cron.

Behavior:
- Load offers, operators, assignments and mappings from the catalog service
- Run the full pipeline (stock, zones, statuses, forecast, leads)
- Write the session cache snapshot (Redis when reachable)
- Print the run summary

Run (local / cron):
  cd services/metrics
  python -m scripts.refresh_metrics
"""

import asyncio
import os
import sys


# Ensure imports work when executed as a script/module
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from offer_metrics.services.metrics_service import build_metrics_service  # noqa: E402
from offer_metrics.settings import get_settings  # noqa: E402
from offer_metrics.stores.memory import InMemoryCacheStorage  # noqa: E402
from offer_metrics.stores.redis import RedisCacheStorage, close_redis, init_redis  # noqa: E402


async def main() -> int:
    settings = get_settings()
    storage = InMemoryCacheStorage()
    if settings.cache_backend == "redis":
        try:
            await init_redis()
            storage = RedisCacheStorage()
        except Exception:
            # The refresh still runs; only the cache write is lost.
            pass

    service = build_metrics_service(storage)
    try:
        run = await service.refresh_all()
        print({"ok": run.error is None, "offers": len(service.table), **run.get_summary()})
        return 0 if run.error is None else 1
    finally:
        await service.close()
        await close_redis()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
