"""Prometheus metrics for the cache layer.

Provides:
- Cache metrics (hits, misses, latency, errors) per tier
- Invalidation volume
- Lock acquisition outcomes
- Memoization write outcomes
- Background refresh outcomes

These counters are process-wide and independent from the per-instance
``CacheStats`` returned by ``CacheService.get_stats()``.

Usage:
    from depot.observability.metrics import record_cache_hit

    record_cache_hit(tier="local")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram
from prometheus_client import generate_latest as prometheus_generate_latest

from depot.config import settings

logger = logging.getLogger(__name__)


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    # Cache metrics
    cache_hits_total: Any = None
    cache_misses_total: Any = None
    cache_operation_duration_seconds: Any = None
    cache_errors_total: Any = None
    cache_invalidated_keys_total: Any = None

    # Coordination metrics
    lock_acquisitions_total: Any = None

    # Memoization metrics
    memoize_writes_total: Any = None
    refreshes_total: Any = None

    # Internal state
    enabled: bool = True
    _initialized: bool = field(default=False, repr=False)
    _registry: CollectorRegistry | None = field(default=None, repr=False)

    def initialize(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        if not self.enabled:
            logger.info("Metrics are disabled")
            self._initialized = True
            return

        self._registry = registry or REGISTRY

        self.cache_hits_total = Counter(
            "depot_cache_hits_total",
            "Cache hits",
            ["tier"],
            registry=self._registry,
        )

        self.cache_misses_total = Counter(
            "depot_cache_misses_total",
            "Cache misses",
            ["tier"],
            registry=self._registry,
        )

        self.cache_operation_duration_seconds = Histogram(
            "depot_cache_operation_duration_seconds",
            "Cache operation latency in seconds",
            ["operation"],
            buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.5),
            registry=self._registry,
        )

        self.cache_errors_total = Counter(
            "depot_cache_errors_total",
            "Cache operations that failed against the backing store",
            ["operation"],
            registry=self._registry,
        )

        self.cache_invalidated_keys_total = Counter(
            "depot_cache_invalidated_keys_total",
            "Keys removed by tag invalidation",
            registry=self._registry,
        )

        self.lock_acquisitions_total = Counter(
            "depot_lock_acquisitions_total",
            "Distributed lock acquisition attempts by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.memoize_writes_total = Counter(
            "depot_memoize_writes_total",
            "Memoized results offered to the cache by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self.refreshes_total = Counter(
            "depot_refreshes_total",
            "Refresh-ahead reloads by outcome",
            ["outcome"],
            registry=self._registry,
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics disabled\n"
        return prometheus_generate_latest(self._registry)


# Global metrics registry
metrics_registry = MetricsRegistry(enabled=settings.enable_metrics)


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry


def record_cache_hit(tier: str = "remote") -> None:
    """Record cache hit."""
    metrics = get_metrics()
    if metrics.cache_hits_total:
        metrics.cache_hits_total.labels(tier=tier).inc()


def record_cache_miss(tier: str = "remote") -> None:
    """Record cache miss."""
    metrics = get_metrics()
    if metrics.cache_misses_total:
        metrics.cache_misses_total.labels(tier=tier).inc()


def record_cache_operation(operation: str, duration: float) -> None:
    """Record cache operation duration.

    Args:
        operation: Cache operation (get, set, delete, invalidate, clear)
        duration: Operation duration in seconds
    """
    metrics = get_metrics()
    if metrics.cache_operation_duration_seconds:
        metrics.cache_operation_duration_seconds.labels(operation=operation).observe(duration)


def record_cache_error(operation: str) -> None:
    """Record a failed cache operation."""
    metrics = get_metrics()
    if metrics.cache_errors_total:
        metrics.cache_errors_total.labels(operation=operation).inc()


def record_invalidation(count: int) -> None:
    """Record keys removed by tag invalidation."""
    metrics = get_metrics()
    if metrics.cache_invalidated_keys_total and count > 0:
        metrics.cache_invalidated_keys_total.inc(count)


def record_lock_acquisition(outcome: str) -> None:
    """Record a lock acquisition outcome (acquired, timeout, error)."""
    metrics = get_metrics()
    if metrics.lock_acquisitions_total:
        metrics.lock_acquisitions_total.labels(outcome=outcome).inc()


def record_memoize_write(outcome: str) -> None:
    """Record a memoization write outcome (stored, rejected, failed)."""
    metrics = get_metrics()
    if metrics.memoize_writes_total:
        metrics.memoize_writes_total.labels(outcome=outcome).inc()


def record_refresh(outcome: str) -> None:
    """Record a refresh-ahead reload outcome (refreshed, failed, forced)."""
    metrics = get_metrics()
    if metrics.refreshes_total:
        metrics.refreshes_total.labels(outcome=outcome).inc()
