"""Error taxonomy for metric stages.

- TransientQueryError: 5xx / timeout / network. Retried with backoff.
- QueryShapeError: malformed or unexpected payload. Never retried.
- StockFeedError: catalog export could not be parsed. Fatal to the stock stage.
- EndpointUnavailableError: every network stage of a run failed on transport.
"""


class MetricsError(RuntimeError):
    pass


class QueryError(MetricsError):
    """Non-retryable analytics endpoint failure."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientQueryError(QueryError):
    """Retryable failure (HTTP 5xx, timeout, network)."""


class QueryShapeError(QueryError):
    """Response body was not one of the supported result shapes."""


class StockFeedError(MetricsError):
    pass


class EndpointUnavailableError(MetricsError):
    """Raised once per run when no network-bound stage could reach its endpoint."""
