"""
Tag-based invalidation, data-change hooks and cache warmup on top of MultiLayerCache.
"""

import asyncio
import inspect
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from .config import CacheManagerConfig
from .invalidation import (
    DataChangeEvent, KeyPatternBuilder, dedupe, default_key_pattern_builders, tags_for_trigger
)
from .multi_layer_cache import MultiLayerCache
from .warmup import WarmupItem, WarmupResult, WarmupStrategy, group_by_ttl

logger = logging.getLogger(__name__)


@dataclass
class Tag:
    """Named group of cache entries, held as (namespace, key) pairs."""
    name: str
    keys: Set[Tuple[str, str]] = field(default_factory=set)


class CacheManager:
    """
    Groups keys under tags and invalidates them when data changes.

    Invalidating a cascading tag also invalidates the tags it lists as
    dependencies. Tags remember the namespace each key was written in; entry lifetime
    is owned by the cache.
    """

    def __init__(
        self,
        cache: MultiLayerCache,
        config: Optional[CacheManagerConfig] = None,
        warmup_strategies: Optional[Iterable[WarmupStrategy]] = None,
        key_pattern_builders: Optional[Mapping[str, KeyPatternBuilder]] = None
    ):
        self.cache = cache
        self.config = config or CacheManagerConfig()
        self.config.validate()

        self.rules = self.config.dependency_rules
        self._tags: Dict[str, Tag] = {}
        self._key_patterns: Dict[str, KeyPatternBuilder] = dict(
            key_pattern_builders if key_pattern_builders is not None else default_key_pattern_builders()
        )
        self._warmup_strategies: Dict[str, WarmupStrategy] = {}
        for strategy in warmup_strategies or []:
            self.register_warmup_strategy(strategy)

        self.metrics = {
            'tag_invalidations': 0,
            'data_changes': 0,
            'invalidated_entries': 0,
            'warmups': 0,
        }

    async def initialize(self) -> Dict[str, Any]:
        """Start the cache, report health and run warmup when enabled."""
        await self.cache.start()

        health = await self.cache.health_check()
        logger.info(f"Cache health: {'HEALTHY' if health['healthy'] else 'UNHEALTHY'}")

        if self.config.warmup.enabled:
            result = await self.warmup_cache()
            logger.info(f"Cache warmup: {result.warmed_keys} keys in {result.duration:.3f}s")

        stats = self.get_stats()
        logger.info(
            f"L1 cache: {stats['l1']['size']}/{stats['l1']['max_size']} entries, "
            f"L2 cache: {'connected' if stats['l2']['connected'] else 'disconnected'}"
        )
        return stats

    # Tags

    async def set_with_tags(self, key: str, value: Any, tags: Iterable[str], **options: Any) -> bool:
        """Store value and index key under every tag; tags are untouched if the write fails."""
        success = await self.cache.set(key, value, **options)

        if success:
            entry = (self._namespace(options.get("namespace")), key)
            for tag_name in tags:
                self._tags.setdefault(tag_name, Tag(tag_name)).keys.add(entry)

        return success

    def _namespace(self, namespace: Optional[str]) -> str:
        return namespace or self.cache.namespace

    async def invalidate_by_tag(self, tag: str, **options: Any) -> int:
        """
        Delete every key under tag (and cascading dependents); returns keys removed.

        Each key is deleted from the namespace it was tagged in.
        """
        options.pop("namespace", None)
        invalidated = await self._invalidate_tag(tag, set(), options)
        self.metrics['invalidated_entries'] += invalidated
        return invalidated

    async def _invalidate_tag(self, tag_name: str, visited: Set[str], options: Dict[str, Any]) -> int:
        if tag_name in visited:
            return 0
        visited.add(tag_name)

        total = 0
        tag = self._tags.get(tag_name)
        if tag is not None and tag.keys:
            entries = list(tag.keys)
            for namespace, key in entries:
                if await self.cache.delete(key, namespace=namespace, **options):
                    total += 1
            tag.keys.difference_update(entries)

        rule = self.rules.get(tag_name)
        if rule is not None and rule.cascading:
            for dependency in rule.dependencies:
                total += await self._invalidate_tag(dependency, visited, options)

        self.metrics['tag_invalidations'] += 1
        logger.info(f"Invalidated {total} cache entries for tag: {tag_name}")
        return total

    def untag(self, key: str, tags: Optional[Iterable[str]] = None, namespace: Optional[str] = None):
        """Drop key from the given tags, or from every tag."""
        entry = (self._namespace(namespace), key)
        names = list(tags) if tags is not None else list(self._tags)
        for name in names:
            tag = self._tags.get(name)
            if tag is not None:
                tag.keys.discard(entry)

    def get_tag_keys(self, tag: str, namespace: Optional[str] = None) -> Set[str]:
        """Keys tagged with tag in one namespace (the cache's own by default)."""
        found = self._tags.get(tag)
        if found is None:
            return set()
        namespace = self._namespace(namespace)
        return {key for entry_namespace, key in found.keys if entry_namespace == namespace}

    @property
    def tags(self) -> List[str]:
        return list(self._tags)

    # Data changes

    def register_key_patterns(self, entity: str, builder: KeyPatternBuilder):
        """Register the key patterns to invalidate when entity changes."""
        self._key_patterns[entity] = builder

    async def handle_data_change(
        self,
        entity: Union[str, DataChangeEvent],
        operation: str = "",
        payload: Optional[Mapping[str, Any]] = None
    ) -> int:
        """
        Invalidate everything a write to the system of record may have staled.

        Tags whose rule lists ``"entity:operation"`` as a trigger are
        invalidated first, then the entity's key patterns built from payload.
        Returns the number of entries removed.
        """
        if isinstance(entity, DataChangeEvent):
            event = entity
        else:
            event = DataChangeEvent(entity, operation, payload or {})

        self.metrics['data_changes'] += 1
        total = 0

        visited: Set[str] = set()
        for tag in tags_for_trigger(self.rules, event.trigger):
            logger.info(f"Data change detected: {event.trigger}, invalidating tag: {tag}")
            total += await self._invalidate_tag(tag, visited, {})

        builder = self._key_patterns.get(event.entity)
        if builder is not None:
            for pattern in dedupe(builder(event.payload, event.operation)):
                total += await self.cache.invalidate(pattern)

        self.metrics['invalidated_entries'] += total
        return total

    def invalidation_hooks(self) -> "CacheInvalidationHooks":
        return CacheInvalidationHooks(self)

    # Warmup

    def register_warmup_strategy(self, strategy: WarmupStrategy):
        self._warmup_strategies[strategy.name] = strategy
        logger.info(f"Registered warmup strategy: {strategy.name}")

    async def warmup_cache(self) -> WarmupResult:
        """
        Run the configured warmup strategies in order.

        Each strategy gets the wall-clock budget left over from the ones
        before it; once the budget is spent the remaining strategies are
        skipped. A strategy that raises is recorded as failed and the run
        continues.
        """
        warmup = self.config.warmup
        result = WarmupResult(success=True, warmed_keys=0, duration=0.0)
        if not warmup.enabled:
            return result

        start = time.monotonic()
        names = list(warmup.strategies)
        logger.info(f"Starting cache warmup: {', '.join(names) or 'no strategies'}")

        for index, name in enumerate(names):
            remaining = warmup.max_duration - (time.monotonic() - start)
            if remaining <= 0:
                logger.warning(f"Warmup budget exhausted, skipping: {', '.join(names[index:])}")
                result.skipped.extend(names[index:])
                break

            strategy = self._warmup_strategies.get(name)
            if strategy is None:
                logger.warning(f"Unknown warmup strategy: {name}")
                result.skipped.append(name)
                continue

            try:
                await asyncio.wait_for(self._run_strategy(strategy, result), timeout=remaining)
                result.completed.append(name)
            except asyncio.TimeoutError:
                logger.warning(f"Warmup timeout reached during {name}")
                result.skipped.append(name)
            except Exception as e:
                logger.error(f"Error warming up {name}: {e}")
                result.failed.append(name)

            if index < len(names) - 1 and warmup.delay_between_strategies > 0:
                remaining = warmup.max_duration - (time.monotonic() - start)
                await asyncio.sleep(max(0.0, min(warmup.delay_between_strategies, remaining)))

        result.duration = time.monotonic() - start
        result.success = not result.failed
        self.metrics['warmups'] += 1
        logger.info(f"Cache warmup completed: {result.warmed_keys} keys in {result.duration:.3f}s")
        return result

    async def _run_strategy(self, strategy: WarmupStrategy, result: WarmupResult):
        batch_size = self.config.warmup.batch_size

        items = strategy.fetch(batch_size)
        if inspect.isawaitable(items):
            items = await items
        batch: List[WarmupItem] = list(itertools.islice(items, batch_size))

        warmed = 0
        for ttl, group in group_by_ttl(batch, strategy.ttl).items():
            if await self.cache.mset(group, ttl=ttl):
                warmed += len(group)
                result.warmed_keys += len(group)
            else:
                logger.warning(f"Warmup {strategy.name} failed to store {len(group)} keys with ttl {ttl}")

        logger.info(f"Warmed up {warmed} entries with {strategy.name}")

    # Stats and health

    def get_stats(self) -> Dict[str, Any]:
        stats = self.cache.get_stats()
        stats["tags"] = {name: len(tag.keys) for name, tag in self._tags.items()}
        stats["invalidation"] = dict(self.metrics)
        return stats

    def hit_rate(self, tier: str = "l1") -> float:
        """Hit rate of a tier as a percentage."""
        counters = self.cache.get_stats()[tier]
        total = counters["hits"] + counters["misses"]
        return counters["hits"] / total * 100 if total > 0 else 0.0

    def average_latency(self) -> float:
        """Average get latency in milliseconds."""
        return self.cache.get_stats()["performance"]["avg_get_time"]

    async def health_check(self) -> Dict[str, Any]:
        return await self.cache.health_check()

    def optimize_cache(self) -> Dict[str, Any]:
        """Inspect stats and suggest tuning changes."""
        stats = self.cache.get_stats()
        suggestions = []

        l1 = stats["l1"]
        if l1["hits"] + l1["misses"] > 0:
            if self.hit_rate("l1") < 70:
                suggestions.append(
                    "L1 cache hit rate is low, consider increasing memory cache size or adjusting TTL"
                )
            if l1["size"] >= l1["max_size"] * 0.9:
                suggestions.append("L1 cache is near capacity, consider increasing max size")

        l2 = stats["l2"]
        if l2["hits"] + l2["misses"] > 0 and self.hit_rate("l2") < 50:
            suggestions.append(
                "L2 cache hit rate is low, consider adjusting caching strategy or warming up more data"
            )

        if stats["performance"]["avg_get_time"] > 50:
            suggestions.append("Average get time is high, consider optimizing cache infrastructure")

        if stats["performance"]["avg_set_time"] > 100:
            suggestions.append("Average set time is high, consider optimizing write operations")

        return {
            "analyzed": 1,
            "optimized": 0 if suggestions else 1,
            "suggestions": suggestions,
        }

    async def close(self):
        await self.cache.close()


class CacheInvalidationHooks:
    """Entity write callbacks that forward to CacheManager.handle_data_change."""

    def __init__(self, manager: CacheManager):
        self.manager = manager

    async def on_user_update(self, user_id: Any, data: Optional[Mapping[str, Any]] = None) -> int:
        return await self.manager.handle_data_change("user", "update", {"id": user_id, **(data or {})})

    async def on_user_delete(self, user_id: Any) -> int:
        return await self.manager.handle_data_change("user", "delete", {"id": user_id})

    async def on_post_create(self, post: Mapping[str, Any]) -> int:
        return await self.manager.handle_data_change("post", "create", post)

    async def on_post_update(self, post: Mapping[str, Any]) -> int:
        return await self.manager.handle_data_change("post", "update", post)

    async def on_post_delete(self, post_id: Any) -> int:
        return await self.manager.handle_data_change("post", "delete", {"id": post_id})

    async def on_product_update(self, product: Mapping[str, Any]) -> int:
        return await self.manager.handle_data_change("product", "update", product)

    async def on_order_create(self, order: Mapping[str, Any]) -> int:
        return await self.manager.handle_data_change("order", "create", order)
