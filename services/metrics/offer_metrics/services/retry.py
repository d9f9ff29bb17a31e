"""Shared retry policy for analytics requests.

Every caller (forecast months, zone batches, lead batches, status chunks)
retries through one ``RetryPolicy`` instead of hand-rolled loops. Only
``TransientQueryError`` is retried; shape errors and other HTTP errors
propagate on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from offer_metrics.services.errors import TransientQueryError

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

RETRYABLE_STATUSES: frozenset[int] = frozenset({500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: base, 2*base, 4*base, ..."""

    max_retries: int = 2
    base_delay_s: float = 1.5
    retryable_statuses: frozenset[int] = RETRYABLE_STATUSES
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.retryable_statuses

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
        return self.base_delay_s * (2**attempt)

    async def run(self, fn: Callable[[], Awaitable[T]], *, label: str = "request") -> T:
        """Call ``fn`` until it succeeds or retries are exhausted."""
        attempt = 0
        while True:
            try:
                return await fn()
            except TransientQueryError as e:
                if attempt >= self.max_retries:
                    logger.warning(f"{label}: giving up after {attempt + 1} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.info(
                    f"{label}: {e}, retry {attempt + 1}/{self.max_retries} in {delay:.1f}s"
                )
                await self.sleep(delay)
                attempt += 1
