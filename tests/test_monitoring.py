"""Tests for the performance monitor and the periodic ticker."""

import asyncio
import logging

import pytest

from tiercache.monitoring import AlertThresholds, CachePerformanceMonitor
from tiercache.scheduler import PeriodicTask


class TestCachePerformanceMonitor:
    """Test alerts, reports and the Prometheus gauge."""

    @pytest.mark.asyncio
    async def test_low_hit_rate_alert(self, manager, cache):
        monitor = CachePerformanceMonitor(manager)
        await cache.get("missing")

        metrics = await monitor.collect_metrics()

        assert metrics["hit_rate"] == 0
        assert any("hit rate is low" in alert for alert in metrics["alerts"])

    @pytest.mark.asyncio
    async def test_no_alerts_when_healthy(self, manager, cache):
        monitor = CachePerformanceMonitor(manager)
        await cache.set("a", 1)
        await cache.get("a")

        metrics = await monitor.collect_metrics()

        assert metrics["alerts"] == []
        assert metrics["memory_usage"] == 1.0

    @pytest.mark.asyncio
    async def test_memory_usage_alert(self, manager, cache):
        monitor = CachePerformanceMonitor(manager, AlertThresholds(hit_rate_min=0, memory_usage_max=1))
        for i in range(5):
            await cache.set(f"k{i}", i)

        metrics = await monitor.collect_metrics()

        assert any("Memory cache usage is high" in alert for alert in metrics["alerts"])

    @pytest.mark.asyncio
    async def test_disconnected_alert(self, manager, fake_redis):
        monitor = CachePerformanceMonitor(manager, AlertThresholds(hit_rate_min=0))
        fake_redis.down = True

        metrics = await monitor.collect_metrics()

        assert "Remote cache is disconnected" in metrics["alerts"]
        assert metrics["health"]["healthy"] is False

    @pytest.mark.asyncio
    async def test_hit_ratio_gauge_updated(self, manager, cache, metrics):
        monitor = CachePerformanceMonitor(manager)
        await cache.set("a", 1)
        await cache.get("a")
        await cache.get("b")

        await monitor.collect_metrics()

        assert metrics.registry.get_sample_value("cache_hit_ratio", {"tier": "l1"}) == 0.5

    @pytest.mark.asyncio
    async def test_generate_report(self, manager, cache):
        monitor = CachePerformanceMonitor(manager)
        await cache.get("missing")

        report = await monitor.generate_report()

        assert "Cache Performance Report" in report
        assert "L1 Hit Rate: 0.0%" in report
        assert "L2 Cache: Connected" in report
        assert "Alerts:" in report

    @pytest.mark.asyncio
    async def test_cache_info_recommendations(self, manager, cache):
        monitor = CachePerformanceMonitor(manager)
        await cache.get("missing")

        info = await monitor.cache_info()

        assert "Consider adjusting cache TTL or warming up more data" in info["recommendations"]

    @pytest.mark.asyncio
    async def test_start_and_stop(self, manager, cache, caplog):
        monitor = CachePerformanceMonitor(manager)
        await cache.get("missing")

        with caplog.at_level(logging.WARNING):
            monitor.start(interval=0.05)
            await asyncio.sleep(0.2)
            await monitor.stop()

        assert not monitor.running
        assert "Cache performance alert" in caplog.text


class TestPeriodicTask:
    """Test the owned background ticker."""

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self):
        ticks = []
        task = PeriodicTask("ticker", 0.02, lambda: ticks.append(1))

        task.start()
        assert task.running
        await asyncio.sleep(0.15)
        await task.stop()

        count = len(ticks)
        assert count >= 2
        assert not task.running

        await asyncio.sleep(0.05)
        assert len(ticks) == count

    @pytest.mark.asyncio
    async def test_async_callback(self):
        ticks = []

        async def tick():
            ticks.append(1)

        task = PeriodicTask("async-ticker", 0.02, tick)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()

        assert task.runs == len(ticks) > 0

    @pytest.mark.asyncio
    async def test_failing_callback_keeps_running(self):
        calls = []

        def flaky():
            calls.append(1)
            raise RuntimeError("boom")

        task = PeriodicTask("flaky", 0.02, flaky)
        task.start()
        await asyncio.sleep(0.15)
        await task.stop()

        assert len(calls) >= 2
        assert task.failures == len(calls)

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        task = PeriodicTask("idle", 1, lambda: None)

        await task.stop()
        assert not task.running

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: None)

    @pytest.mark.asyncio
    async def test_maintenance_prunes_memory(self, cache):
        cache.l1.set("test:short", 1, ttl=0.01)
        await asyncio.sleep(0.02)

        await cache._maintain()

        assert cache.l1.size() == 0
