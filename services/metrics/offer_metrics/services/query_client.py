"""Client for the analytics SQL endpoint.

The endpoint accepts ``{"sql": ..., "assoc": bool}`` and answers with either
an array of keyed records or an array of arrays whose first row is the
header. Both shapes are normalized into ``QueryResult`` right here; callers
never branch on the raw shape.

Failure classes:
- HTTP 500/502/503/504, timeouts, network errors -> TransientQueryError (retried)
- other non-200 statuses -> QueryError
- invalid JSON, ``{"error": ...}``, unknown shape -> QueryShapeError
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from offer_metrics.services.errors import QueryError, QueryShapeError, TransientQueryError
from offer_metrics.services.retry import RetryPolicy
from offer_metrics.settings import get_settings

logger = logging.getLogger("uvicorn.error")


@dataclass
class QueryResult:
    """Normalized query result: column names + list of keyed rows."""

    columns: list[str] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)


def normalize_result(payload: Any) -> QueryResult:
    """Normalize either supported response shape into a ``QueryResult``."""
    if isinstance(payload, dict):
        if payload.get("error"):
            raise QueryShapeError(f"API error: {payload['error']}")
        raise QueryShapeError("Unsupported result shape: object")
    if not isinstance(payload, list):
        raise QueryShapeError(f"Unsupported result shape: {type(payload).__name__}")
    if not payload:
        return QueryResult()

    first = payload[0]
    if isinstance(first, list):
        header = [str(h) for h in first]
        rows: list[dict[str, Any]] = []
        for raw in payload[1:]:
            if not isinstance(raw, list):
                raise QueryShapeError("Mixed row shapes in header-row result")
            rows.append(dict(zip(header, raw)))
        return QueryResult(columns=header, rows=rows)

    if isinstance(first, dict):
        if not all(isinstance(r, dict) for r in payload):
            raise QueryShapeError("Mixed row shapes in record result")
        return QueryResult(columns=list(first.keys()), rows=list(payload))

    raise QueryShapeError(f"Unsupported row type: {type(first).__name__}")


def sql_literal(value: str) -> str:
    """Quote a string literal for the analytics SQL dialect."""
    return "'" + str(value).replace("'", "''") + "'"


def sql_in_list(values: Iterable[str]) -> str:
    """Comma-joined quoted literals for an ``IN (...)`` clause."""
    return ",".join(sql_literal(v) for v in values)


class AnalyticsQueryClient:
    """Async client for the analytics SQL endpoint."""

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.url = url or settings.analytics_url
        self.timeout = timeout or settings.analytics_timeout_s
        self.retry = retry or RetryPolicy(
            max_retries=settings.analytics_max_retries,
            base_delay_s=settings.analytics_backoff_base_s,
        )
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(transport=self._transport)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def query(
        self,
        sql: str,
        *,
        assoc: bool = True,
        timeout: float | None = None,
        retry: RetryPolicy | None = None,
        label: str = "analytics",
    ) -> QueryResult:
        """Run one SQL query with retries.

        Args:
            sql: Raw query string.
            assoc: Ask the endpoint for keyed records (it may still send a header row).
            timeout: Per-attempt timeout in seconds (defaults to client timeout).
            retry: Retry policy override (defaults to client policy).
            label: Name used in log lines.

        Returns:
            Normalized query result.
        """
        policy = retry or self.retry
        per_attempt_timeout = timeout or self.timeout

        async def _attempt() -> QueryResult:
            return await self._post_once(sql, assoc, per_attempt_timeout, policy)

        return await policy.run(_attempt, label=label)

    async def _post_once(
        self, sql: str, assoc: bool, timeout: float, policy: RetryPolicy
    ) -> QueryResult:
        client = await self._get_client()
        try:
            response = await client.post(
                self.url,
                json={"sql": sql, "assoc": assoc},
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientQueryError(f"Timeout after {timeout:.0f}s") from e
        except httpx.TransportError as e:
            raise TransientQueryError(f"Network error: {e}") from e

        code = response.status_code
        if policy.is_retryable_status(code):
            raise TransientQueryError(f"HTTP {code}", status_code=code)
        if code != 200:
            raise QueryError(f"HTTP {code}: {response.text[:100]}", status_code=code)

        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            raise QueryShapeError(f"Invalid JSON: {e}") from e

        result = normalize_result(payload)
        logger.debug(f"Analytics query returned {len(result)} rows ({len(response.content) // 1024}KB)")
        return result
