"""Observability module.

Provides metrics and structured logging:
- Prometheus metrics for cache, lock and memoization activity
- JSON structured logging with correlation IDs
"""

from depot.observability.logging import (
    LogContext,
    configure_logging,
    correlation_id_var,
    request_id_var,
)
from depot.observability.metrics import (
    get_metrics,
    metrics_registry,
)

__all__ = [
    # Logging
    "configure_logging",
    "LogContext",
    "request_id_var",
    "correlation_id_var",
    # Metrics
    "metrics_registry",
    "get_metrics",
]
