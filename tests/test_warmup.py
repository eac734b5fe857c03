"""Tests for bounded cache warmup."""

import asyncio
import itertools

import pytest

from tiercache.warmup import WarmupItem, WarmupStrategy, group_by_ttl


def slow_strategy(name: str, count: int, delay: float) -> WarmupStrategy:
    async def fetch(batch_size):
        await asyncio.sleep(delay)
        return [WarmupItem(f"{name}:{i}", {"n": i}) for i in range(min(count, batch_size))]

    return WarmupStrategy(name=name, fetch=fetch, ttl=600)


class TestWarmup:
    """Test strategy ordering, budget and failure handling."""

    @pytest.mark.asyncio
    async def test_warmup_populates_cache(self, manager, cache):
        manager.config.warmup.strategies = ["popular_content", "user_preferences"]
        manager.register_warmup_strategy(slow_strategy("popular_content", 3, 0))
        manager.register_warmup_strategy(WarmupStrategy(
            name="user_preferences",
            fetch=lambda batch_size: [
                WarmupItem("user:preferences:1", {"theme": "dark"}, ttl=1800),
                WarmupItem("user:profile:1", {"name": "Ada"}),
            ],
            ttl=300,
        ))

        result = await manager.warmup_cache()

        assert result.success
        assert result.warmed_keys == 5
        assert result.completed == ["popular_content", "user_preferences"]
        assert await cache.get("popular_content:2") == {"n": 2}
        assert await cache.get("user:preferences:1") == {"theme": "dark"}

    @pytest.mark.asyncio
    async def test_batch_size_bounds_items(self, manager):
        manager.config.warmup.batch_size = 2
        manager.config.warmup.strategies = ["recent_data"]
        manager.register_warmup_strategy(WarmupStrategy(
            name="recent_data",
            fetch=lambda batch_size: [WarmupItem(f"recent:{i}", i) for i in range(10)],
        ))

        result = await manager.warmup_cache()

        assert result.warmed_keys == 2

    @pytest.mark.asyncio
    async def test_unbounded_strategy_is_not_drained(self, manager):
        produced = []

        def endless(batch_size):
            for i in itertools.count():
                produced.append(i)
                yield WarmupItem(f"stream:{i}", i)

        manager.config.warmup.batch_size = 3
        manager.config.warmup.strategies = ["stream"]
        manager.register_warmup_strategy(WarmupStrategy(name="stream", fetch=endless))

        result = await manager.warmup_cache()

        assert result.warmed_keys == 3
        assert len(produced) == 3

    @pytest.mark.asyncio
    async def test_budget_exhaustion_skips_strategies(self, manager):
        manager.config.warmup.max_duration = 0.5
        manager.config.warmup.strategies = ["one", "two", "three"]
        for name in ("one", "two", "three"):
            manager.register_warmup_strategy(slow_strategy(name, 5, 0.3))

        result = await manager.warmup_cache()

        assert result.warmed_keys < 15
        assert result.completed == ["one"]
        assert "three" in result.skipped
        assert result.duration < 1.0

    @pytest.mark.asyncio
    async def test_failing_strategy_does_not_stop_run(self, manager):
        async def broken(batch_size):
            raise RuntimeError("database unavailable")

        manager.config.warmup.strategies = ["broken", "ok"]
        manager.register_warmup_strategy(WarmupStrategy(name="broken", fetch=broken))
        manager.register_warmup_strategy(slow_strategy("ok", 2, 0))

        result = await manager.warmup_cache()

        assert not result.success
        assert result.failed == ["broken"]
        assert result.completed == ["ok"]
        assert result.warmed_keys == 2

    @pytest.mark.asyncio
    async def test_unknown_strategy_skipped(self, manager):
        manager.config.warmup.strategies = ["product_catalog"]

        result = await manager.warmup_cache()

        assert result.success
        assert result.skipped == ["product_catalog"]

    @pytest.mark.asyncio
    async def test_disabled_warmup(self, manager):
        manager.config.warmup.enabled = False
        manager.config.warmup.strategies = ["one"]
        manager.register_warmup_strategy(slow_strategy("one", 1, 0))

        result = await manager.warmup_cache()

        assert result.success
        assert result.warmed_keys == 0

    def test_group_by_ttl(self):
        items = [WarmupItem("a", 1), WarmupItem("b", 2, ttl=60), WarmupItem("c", 3)]

        assert group_by_ttl(items, 300) == {300: {"a": 1, "c": 3}, 60: {"b": 2}}


class TestInitialize:
    """Test manager start-up."""

    @pytest.mark.asyncio
    async def test_initialize_runs_warmup(self, manager, cache):
        manager.config.warmup.strategies = ["one"]
        manager.register_warmup_strategy(slow_strategy("one", 2, 0))

        stats = await manager.initialize()

        assert stats["l2"]["connected"] is True
        assert stats["l1"]["size"] == 2
        await manager.close()
