from servicebay.middleware.correlation import (
    CorrelationIdMiddleware,
    CorrelationLogFilter,
    get_correlation_id,
    get_request_id,
)

__all__ = [
    "CorrelationIdMiddleware",
    "CorrelationLogFilter",
    "get_correlation_id",
    "get_request_id",
]
