"""
Cache metrics: in-process tier counters and Prometheus collectors.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


@dataclass
class TierStats:
    """Per-tier operation counters."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    errors: int = 0
    total_time: float = 0.0  # milliseconds
    operations: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    @property
    def avg_response_time(self) -> float:
        return self.total_time / self.operations if self.operations > 0 else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["hit_rate"] = round(self.hit_rate * 100, 2)
        data["avg_response_time"] = round(self.avg_response_time, 2)
        return data


class CacheMetrics:
    """
    Prometheus collectors shared by the tiers of one cache instance.

    Collectors are registered on a private registry unless one is passed,
    so several caches can live in the same process.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        self.operations = Counter(
            'cache_operations_total',
            'Total cache operations',
            ['tier', 'operation', 'status'],
            registry=self.registry
        )

        self.duration = Histogram(
            'cache_operation_duration_seconds',
            'Cache operation duration',
            ['tier', 'operation'],
            buckets=(0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5),
            registry=self.registry
        )

        self.hit_ratio = Gauge(
            'cache_hit_ratio',
            'Cache hit ratio',
            ['tier'],
            registry=self.registry
        )

        self.entries = Gauge(
            'cache_entries',
            'Entries currently held by the tier',
            ['tier'],
            registry=self.registry
        )

    def track_operation(self, tier: str, operation: str, status: str,
                        duration: Optional[float] = None):
        """Track one operation; duration is in seconds."""
        self.operations.labels(tier=tier, operation=operation, status=status).inc()
        if duration is not None:
            self.duration.labels(tier=tier, operation=operation).observe(duration)

    def update_hit_ratio(self, tier: str, ratio: float):
        self.hit_ratio.labels(tier=tier).set(ratio)

    def update_entries(self, tier: str, count: int):
        self.entries.labels(tier=tier).set(count)
