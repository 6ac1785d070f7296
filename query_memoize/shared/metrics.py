"""
Prometheus metrics for the query memoization layer.
"""

from typing import Any, Dict, Optional

from prometheus_client import Counter, CollectorRegistry, REGISTRY


class CacheMetrics:
    """Counters describing how memoized calls were served."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else REGISTRY
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up cache metrics."""
        self._metrics["query_cache_requests_total"] = Counter(
            "query_cache_requests_total",
            "Memoized calls by how they were served",
            ["operation", "result"],
            registry=self.registry
        )

        self._metrics["query_cache_refresh_total"] = Counter(
            "query_cache_refresh_total",
            "Background refreshes of stale entries",
            ["operation", "outcome"],
            registry=self.registry
        )

        self._metrics["query_cache_invalidations_total"] = Counter(
            "query_cache_invalidations_total",
            "Keys deleted by invalidation",
            ["operation"],
            registry=self.registry
        )

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc(amount)
