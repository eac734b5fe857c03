"""
Cache performance monitoring: threshold alerts, text reports and tuning advice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .cache_manager import CacheManager
from .metrics import CacheMetrics
from .scheduler import PeriodicTask

logger = logging.getLogger(__name__)


@dataclass
class AlertThresholds:
    hit_rate_min: float = 70.0  # percent
    avg_response_time_max: float = 100.0  # milliseconds
    error_rate_max: float = 5.0  # percent of L2 operations
    memory_usage_max: float = 90.0  # percent of L1 capacity


class CachePerformanceMonitor:
    """
    Periodically checks cache stats against alert thresholds.

    The owner calls start() and stop(); alerts are logged at warning level.
    """

    def __init__(
        self,
        manager: CacheManager,
        thresholds: Optional[AlertThresholds] = None,
        metrics: Optional[CacheMetrics] = None
    ):
        self.manager = manager
        self.thresholds = thresholds or AlertThresholds()
        self.metrics = metrics or manager.cache.metrics
        self._task: Optional[PeriodicTask] = None

    async def collect_metrics(self) -> Dict[str, Any]:
        """Gather stats and health and evaluate alert thresholds."""
        stats = self.manager.get_stats()
        health = await self.manager.health_check()
        alerts: List[str] = []

        hit_rate = self.manager.hit_rate("l1")
        if hit_rate < self.thresholds.hit_rate_min:
            alerts.append(f"L1 cache hit rate is low: {hit_rate:.1f}%")

        avg_get_time = stats["performance"]["avg_get_time"]
        if avg_get_time > self.thresholds.avg_response_time_max:
            alerts.append(f"Cache response time is high: {avg_get_time:.1f}ms")

        memory_usage = stats["l1"]["size"] / stats["l1"]["max_size"] * 100
        if memory_usage > self.thresholds.memory_usage_max:
            alerts.append(f"Memory cache usage is high: {memory_usage:.1f}%")

        error_rate = self._l2_error_rate()
        if error_rate > self.thresholds.error_rate_max:
            alerts.append(f"Remote cache error rate is high: {error_rate:.1f}%")

        if self.manager.cache.l2 is not None and not health["l2"]["connected"]:
            alerts.append("Remote cache is disconnected")

        self.metrics.update_hit_ratio("l1", hit_rate / 100)
        if stats["l2"]["hits"] + stats["l2"]["misses"] > 0:
            self.metrics.update_hit_ratio("l2", self.manager.hit_rate("l2") / 100)

        return {
            "stats": stats,
            "health": health,
            "hit_rate": hit_rate,
            "memory_usage": memory_usage,
            "error_rate": error_rate,
            "alerts": alerts,
        }

    def _l2_error_rate(self) -> float:
        l2 = self.manager.cache.l2
        if l2 is None:
            return 0.0
        attempts = l2.stats.operations + l2.stats.errors
        return l2.stats.errors / attempts * 100 if attempts else 0.0

    async def generate_report(self) -> str:
        """Render a plain-text performance report."""
        metrics = await self.collect_metrics()
        stats = metrics["stats"]
        health = metrics["health"]
        timestamp = datetime.now(timezone.utc).isoformat()

        lines = [
            f"Cache Performance Report - {timestamp}",
            "=" * 50,
            "",
            "Cache Performance:",
            f"   L1 Hit Rate: {metrics['hit_rate']:.1f}%",
            f"   L1 Memory Usage: {metrics['memory_usage']:.1f}%",
            f"   Avg Response Time: {stats['performance']['avg_get_time']:.1f}ms",
            f"   Total Operations: {stats['performance']['total_operations']}",
            "",
            "Cache Health:",
            f"   L1 Cache: {'Healthy' if health['l1']['healthy'] else 'Unhealthy'}",
            f"   L2 Cache: {'Connected' if health['l2']['connected'] else 'Disconnected'}",
            "",
        ]

        if metrics["alerts"]:
            lines.append("Alerts:")
            lines.extend(f"   - {alert}" for alert in metrics["alerts"])
        else:
            lines.append("No alerts - all systems performing well")

        return "\n".join(lines) + "\n"

    async def cache_info(self) -> Dict[str, Any]:
        """Stats and health with configuration recommendations."""
        stats = self.manager.get_stats()
        health = await self.manager.health_check()
        hit_rate = self.manager.hit_rate("l1")
        recommendations = []

        if hit_rate < 60:
            recommendations.append("Consider adjusting cache TTL or warming up more data")
        if not health["l2"]["connected"]:
            recommendations.append("Consider setting up Redis for better cache performance")
        if stats["l1"]["size"] >= stats["l1"]["max_size"] * 0.8:
            recommendations.append("Consider increasing memory cache size")

        return {
            "stats": stats,
            "health": health,
            "hit_rate": hit_rate,
            "recommendations": recommendations,
        }

    async def check(self):
        """One monitoring pass; alerts are logged."""
        metrics = await self.collect_metrics()

        if metrics["alerts"]:
            for alert in metrics["alerts"]:
                logger.warning(f"Cache performance alert: {alert}")
        else:
            logger.info(f"Cache system healthy - hit rate: {metrics['hit_rate']:.1f}%")

    def start(self, interval: float = 300.0):
        """Start periodic monitoring every interval seconds."""
        if self._task is not None and self._task.running:
            return
        self._task = PeriodicTask("cache-monitor", interval, self.check)
        self._task.start()

    async def stop(self):
        if self._task is not None:
            await self._task.stop()
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and self._task.running
