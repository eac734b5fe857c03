"""
Multi-layer cache: in-process L1 in front of the Redis L2.
"""

import asyncio
import hashlib
import inspect
import json
import logging
import time
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set

from .config import CacheConfig
from .exceptions import ConnectivityError, InvalidationScopeError
from .invalidation import (
    PredicatePattern, RegexPattern, WildcardPattern, coerce_pattern, glob_escape, glob_to_regex
)
from .memory_cache import MemoryCache
from .metrics import CacheMetrics
from .redis_cache import RedisCache
from .scheduler import PeriodicTask

logger = logging.getLogger(__name__)

MAX_KEY_LENGTH = 250

L1_OPERATION_LABELS = {
    "hits": ("get", "hit"),
    "misses": ("get", "miss"),
    "sets": ("set", "ok"),
}


async def _invoke(func: Callable, *args: Any) -> Any:
    """Call a sync or async function and return its result."""
    result = func(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class MultiLayerCache:
    """
    Two-tier cache with cache-aside, write-through and write-behind helpers.

    Every operation accepts keyword options ``skip_memory``, ``skip_redis``
    and ``namespace``; writes also accept ``ttl`` (seconds). Keys are stored
    as ``"{namespace}:{key}"``.

    Failures degrade instead of raising: reads return None, writes return
    False. An L1-only write while L2 is unreachable still counts as success.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        redis_cache: Optional[RedisCache] = None,
        memory_cache: Optional[MemoryCache] = None,
        metrics: Optional[CacheMetrics] = None
    ):
        self.config = config or CacheConfig()
        self.config.validate()

        self.namespace = self.config.namespace
        self.metrics = metrics or CacheMetrics()

        self.l1 = memory_cache or MemoryCache(self.config.memory, metrics=self.metrics)
        if redis_cache is not None:
            self.l2: Optional[RedisCache] = redis_cache
        elif self.config.redis_enabled:
            self.l2 = RedisCache(self.config.redis, metrics=self.metrics)
        else:
            self.l2 = None

        self._pending_writes: Set[asyncio.Task] = set()
        self._maintenance = PeriodicTask(
            "cache-maintenance", self.config.maintenance_interval, self._maintain
        )
        self.reset_stats()

    # Lifecycle

    async def start(self):
        """Connect L2 (degrading on failure) and start the maintenance ticker."""
        if self.l2 is not None:
            try:
                await self.l2.connect()
            except ConnectivityError as e:
                logger.warning(f"Redis unavailable at startup, serving from memory only: {e}")

        self._maintenance.start()
        logger.info(f"Multi-layer cache started (namespace={self.namespace})")

    async def stop(self):
        await self._maintenance.stop()

    async def close(self):
        """Stop background work, drain write-behind tasks and release both tiers."""
        await self.stop()
        await self.wait_for_pending_writes()
        self.l1.clear()
        if self.l2 is not None:
            await self.l2.close()
        logger.info("Multi-layer cache closed")

    async def _maintain(self):
        self.l1.prune_expired()
        if self.l2 is not None and not self.l2.is_connected():
            await self.l2.ensure_connected()

    # Keys

    def build_key(self, key: str, namespace: Optional[str] = None) -> str:
        return f"{namespace or self.namespace}:{key}"

    def _prefix(self, namespace: Optional[str]) -> str:
        return self.build_key("", namespace)

    async def _l2_available(self, skip_redis: bool) -> bool:
        return not skip_redis and self.l2 is not None and await self.l2.ensure_connected()

    def _valid_ttl(self, key: str, ttl: Optional[float]) -> bool:
        if ttl is None or ttl > 0:
            return True
        logger.warning(f"Rejected cache write for {key}: TTL must be positive, got {ttl}")
        return False

    # Basic operations

    async def get(
        self,
        key: str,
        *,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> Optional[Any]:
        """Get value from L1, then L2; an L2 hit back-fills L1."""
        start = time.perf_counter()
        cache_key = self.build_key(key, namespace)

        try:
            if not skip_memory:
                value = self.l1.get(cache_key)
                if value is not None:
                    self._count("l1", "hits")
                    return value
                self._count("l1", "misses")

            if await self._l2_available(skip_redis):
                value, remaining = await self.l2.get_with_ttl(cache_key)
                if value is not None:
                    self._count("l2", "hits")
                    if not skip_memory:
                        self._backfill(cache_key, value, remaining)
                    return value
                self._count("l2", "misses")

            return None
        except Exception as e:
            logger.error(f"Cache get error for key {cache_key}: {e}")
            return None
        finally:
            self._record_time("get", start)

    async def set(
        self,
        key: str,
        value: Any,
        *,
        ttl: Optional[float] = None,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> bool:
        """
        Set value in both tiers.

        Returns False when an active L2 rejects the write; the L1 copy is
        then dropped so the tiers do not disagree.
        """
        if not self._valid_ttl(key, ttl):
            return False

        start = time.perf_counter()
        cache_key = self.build_key(key, namespace)

        try:
            if not skip_memory and self.l1.set(cache_key, value, ttl):
                self._count("l1", "sets")

            if await self._l2_available(skip_redis):
                if not await self.l2.set(cache_key, value, self._remote_ttl(ttl)):
                    self.l1.delete(cache_key)
                    return False
                self._count("l2", "sets")

            return True
        except Exception as e:
            logger.error(f"Cache set error for key {cache_key}: {e}")
            self.l1.delete(cache_key)
            return False
        finally:
            self._record_time("set", start)

    async def add(
        self,
        key: str,
        value: Any,
        *,
        ttl: Optional[float] = None,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> bool:
        """Store value only if the key is absent (Redis SET NX)."""
        if not self._valid_ttl(key, ttl):
            return False

        cache_key = self.build_key(key, namespace)

        try:
            if await self._l2_available(skip_redis):
                stored = await self.l2.set(cache_key, value, self._remote_ttl(ttl), nx=True)
                if not stored:
                    return False
                self._count("l2", "sets")
            elif skip_memory or self.l1.has(cache_key):
                return False

            if not skip_memory and self.l1.set(cache_key, value, ttl):
                self._count("l1", "sets")
            return True
        except Exception as e:
            logger.error(f"Cache add error for key {cache_key}: {e}")
            return False

    @staticmethod
    def _remote_ttl(ttl: Optional[float]) -> Optional[int]:
        # Redis expiry has whole-second resolution
        return max(1, int(round(ttl))) if ttl is not None else None

    def _backfill(self, cache_key: str, value: Any, remaining: Optional[float]):
        """Copy an L2 hit into L1 without outliving the L2 entry."""
        if remaining is None:
            ttl = None
        elif remaining <= 0:
            return
        else:
            ttl = min(remaining, self.l1.default_ttl)

        if self.l1.set(cache_key, value, ttl):
            self._count("l1", "sets")

    async def delete(
        self,
        key: str,
        *,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> bool:
        """Delete from both tiers; True if either held the key."""
        cache_key = self.build_key(key, namespace)
        removed = False

        try:
            if not skip_memory:
                removed = self.l1.delete(cache_key)

            if await self._l2_available(skip_redis):
                removed = await self.l2.delete(cache_key) > 0 or removed
        except Exception as e:
            logger.error(f"Cache delete error for key {cache_key}: {e}")

        return removed

    async def exists(
        self,
        key: str,
        *,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> bool:
        cache_key = self.build_key(key, namespace)

        try:
            if not skip_memory and self.l1.has(cache_key):
                return True

            if await self._l2_available(skip_redis):
                return await self.l2.exists(cache_key)
        except Exception as e:
            logger.error(f"Cache exists error for key {cache_key}: {e}")

        return False

    # Batch operations

    async def mget(
        self,
        keys: List[str],
        *,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> List[Optional[Any]]:
        """Get many values; only L1 misses are fetched from L2."""
        cache_keys = [self.build_key(key, namespace) for key in keys]
        results: List[Optional[Any]] = [None] * len(keys)
        missing: List[int] = []

        start = time.perf_counter()
        try:
            if skip_memory:
                missing = list(range(len(keys)))
            else:
                for i, cache_key in enumerate(cache_keys):
                    value = self.l1.get(cache_key)
                    if value is not None:
                        results[i] = value
                        self._count("l1", "hits")
                    else:
                        missing.append(i)
                        self._count("l1", "misses")

            if missing and await self._l2_available(skip_redis):
                found = await self.l2.mget_with_ttl([cache_keys[i] for i in missing])

                for index, (value, remaining) in zip(missing, found):
                    if value is None:
                        self._count("l2", "misses")
                        continue

                    results[index] = value
                    self._count("l2", "hits")
                    if not skip_memory:
                        self._backfill(cache_keys[index], value, remaining)
        except Exception as e:
            logger.error(f"Cache mget error: {e}")
        finally:
            self._record_time("get", start)

        return results

    async def mset(
        self,
        items: Mapping[str, Any],
        *,
        ttl: Optional[float] = None,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> bool:
        """Set many values; L2 is written in one pipeline and reported as a whole."""
        if not self._valid_ttl(f"batch of {len(items)} keys", ttl):
            return False

        cache_items = {self.build_key(key, namespace): value for key, value in items.items()}

        start = time.perf_counter()
        try:
            if not skip_memory:
                for cache_key, value in cache_items.items():
                    if self.l1.set(cache_key, value, ttl):
                        self._count("l1", "sets")

            if await self._l2_available(skip_redis):
                if not await self.l2.mset(cache_items, self._remote_ttl(ttl)):
                    for cache_key in cache_items:
                        self.l1.delete(cache_key)
                    return False
                self._count("l2", "sets", len(cache_items))

            return True
        except Exception as e:
            logger.error(f"Cache mset error: {e}")
            return False
        finally:
            self._record_time("set", start)

    # Invalidation

    async def invalidate(
        self,
        pattern: Any,
        *,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> int:
        """
        Remove entries matching a pattern; returns entries removed across tiers.

        ``pattern`` may be a glob string (``*`` and ``?``), a compiled regex
        or a ``(key, value) -> bool`` predicate. Regexes and predicates see
        keys without the namespace prefix.

        Predicates are O(n) over the namespace on L2: every remote value is
        fetched to evaluate them. Avoid them on hot paths.
        """
        pattern = coerce_pattern(pattern)
        prefix = self._prefix(namespace)
        removed = 0

        try:
            if isinstance(pattern, WildcardPattern):
                removed += await self._invalidate_wildcard(pattern, prefix, skip_memory, skip_redis)
            elif isinstance(pattern, RegexPattern):
                removed += await self._invalidate_regex(pattern, prefix, skip_memory, skip_redis)
            elif isinstance(pattern, PredicatePattern):
                removed += await self._invalidate_predicate(pattern, prefix, skip_memory, skip_redis)
        except Exception as e:
            logger.error(f"Cache invalidation error for {pattern}: {e}")

        logger.info(f"Invalidated {removed} cache entries matching {pattern}")
        return removed

    async def _invalidate_wildcard(self, pattern: WildcardPattern, prefix: str,
                                   skip_memory: bool, skip_redis: bool) -> int:
        removed = 0

        if pattern.is_exact:
            cache_key = prefix + pattern.pattern
            if not skip_memory and self.l1.delete(cache_key):
                removed += 1
            if await self._l2_available(skip_redis):
                removed += await self.l2.delete(cache_key)
            return removed

        if not skip_memory:
            regex = glob_to_regex(pattern.pattern)
            removed += self.l1.delete_matching(
                lambda key, _value: key.startswith(prefix) and regex.match(key[len(prefix):]) is not None
            )
        if await self._l2_available(skip_redis):
            removed += await self.l2.flush_pattern(
                glob_escape(prefix) + glob_escape(pattern.pattern, wildcards=True)
            )
        return removed

    async def _invalidate_regex(self, pattern: RegexPattern, prefix: str,
                                skip_memory: bool, skip_redis: bool) -> int:
        def matches(key: str) -> bool:
            return key.startswith(prefix) and pattern.regex.search(key[len(prefix):]) is not None

        removed = 0
        if not skip_memory:
            removed += self.l1.delete_matching(lambda key, _value: matches(key))

        if await self._l2_available(skip_redis):
            candidates = await self.l2.keys(glob_escape(prefix) + "*")
            removed += await self._delete_remote([key for key in candidates if matches(key)])
        return removed

    async def _invalidate_predicate(self, pattern: PredicatePattern, prefix: str,
                                    skip_memory: bool, skip_redis: bool) -> int:
        predicate = pattern.predicate
        removed = 0

        if not skip_memory:
            removed += self.l1.delete_matching(
                lambda key, value: key.startswith(prefix) and predicate(key[len(prefix):], value)
            )

        if not await self._l2_available(skip_redis):
            return removed

        candidates = await self.l2.keys(glob_escape(prefix) + "*")
        threshold = self.config.predicate_scan_warn_threshold
        if len(candidates) > threshold:
            logger.warning(str(InvalidationScopeError(len(candidates), threshold)))

        victims = []
        batch_size = self.config.predicate_fetch_batch_size
        for i in range(0, len(candidates), batch_size):
            batch = candidates[i:i + batch_size]
            values = await self.l2.mget(batch)
            victims.extend(
                key for key, value in zip(batch, values)
                if value is not None and predicate(key[len(prefix):], value)
            )

        return removed + await self._delete_remote(victims)

    async def _delete_remote(self, keys: List[str]) -> int:
        deleted = 0
        batch_size = self.l2.config.delete_batch_size
        for i in range(0, len(keys), batch_size):
            deleted += await self.l2.delete(*keys[i:i + batch_size])
        return deleted

    async def clear(self, namespace: Optional[str] = None) -> int:
        """
        Clear one namespace from both tiers.

        Without a namespace the whole of L1 is dropped together with this
        cache's namespace on L2.
        """
        removed = 0
        try:
            if namespace:
                removed += self.l1.clear(self._prefix(namespace))
            else:
                removed += self.l1.clear()

            if await self._l2_available(False):
                removed += await self.l2.flush_pattern(glob_escape(self._prefix(namespace)) + "*")
        except Exception as e:
            logger.error(f"Cache clear error: {e}")

        logger.info(f"Cleared {removed} cache entries (namespace={namespace or self.namespace})")
        return removed

    # Read-through and write patterns

    async def get_or_set(
        self,
        key: str,
        fetcher: Callable[[], Any],
        *,
        ttl: Optional[float] = None,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> Any:
        """
        Cache-aside read: return the cached value or fetch, store and return it.

        Fetcher errors propagate. A None result is returned but not cached.
        """
        value = await self.get(key, skip_memory=skip_memory, skip_redis=skip_redis, namespace=namespace)
        if value is not None:
            return value

        value = await _invoke(fetcher)

        if value is not None:
            await self.set(
                key, value, ttl=ttl, skip_memory=skip_memory, skip_redis=skip_redis, namespace=namespace
            )
        return value

    async def set_through(
        self,
        key: str,
        value: Any,
        writer: Callable[[Any], Any],
        *,
        ttl: Optional[float] = None,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> bool:
        """Write-through: persist with writer first, then cache. Writer errors propagate."""
        await _invoke(writer, value)
        return await self.set(
            key, value, ttl=ttl, skip_memory=skip_memory, skip_redis=skip_redis, namespace=namespace
        )

    async def set_behind(
        self,
        key: str,
        value: Any,
        writer: Callable[[Any], Any],
        *,
        ttl: Optional[float] = None,
        skip_memory: bool = False,
        skip_redis: bool = False,
        namespace: Optional[str] = None
    ) -> bool:
        """
        Write-behind: cache now, persist in a background task.

        If the writer fails the entry is evicted from both tiers.
        """
        stored = await self.set(
            key, value, ttl=ttl, skip_memory=skip_memory, skip_redis=skip_redis, namespace=namespace
        )

        task = asyncio.create_task(self._write_behind(key, value, writer, namespace))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        return stored

    async def _write_behind(self, key: str, value: Any, writer: Callable[[Any], Any],
                            namespace: Optional[str]):
        try:
            await _invoke(writer, value)
        except Exception as e:
            logger.error(f"Write-behind cache error for key {key}: {e}")
            await self.delete(key, namespace=namespace)

    async def wait_for_pending_writes(self):
        """Wait for every scheduled write-behind task to finish."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    @property
    def pending_writes(self) -> int:
        return len(self._pending_writes)

    # Stats and health

    def _count(self, tier: str, counter: str, amount: int = 1):
        self._counters[tier][counter] += amount
        if tier == "l1":
            operation, status = L1_OPERATION_LABELS[counter]
            self.metrics.track_operation(tier, operation, status)

    def _record_time(self, operation: str, start: float):
        timing = self._timings[operation]
        timing["total"] += (time.perf_counter() - start) * 1000
        timing["count"] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of per-tier counters and average latencies (ms)."""
        gets = self._timings["get"]
        sets = self._timings["set"]

        return {
            "l1": {
                **self._counters["l1"],
                "size": self.l1.size(),
                "max_size": self.l1.max_entries,
            },
            "l2": {
                **self._counters["l2"],
                "connected": self.l2 is not None and self.l2.is_connected(),
            },
            "performance": {
                "avg_get_time": gets["total"] / gets["count"] if gets["count"] else 0.0,
                "avg_set_time": sets["total"] / sets["count"] if sets["count"] else 0.0,
                "total_operations": gets["count"] + sets["count"],
            },
        }

    def reset_stats(self):
        self._counters = {
            "l1": {"hits": 0, "misses": 0, "sets": 0},
            "l2": {"hits": 0, "misses": 0, "sets": 0},
        }
        self._timings = {
            "get": {"total": 0.0, "count": 0},
            "set": {"total": 0.0, "count": 0},
        }

    async def health_check(self) -> Dict[str, Any]:
        """Per-tier health; L2 is pinged."""
        l1_healthy = self.l1 is not None
        l2_connected = self.l2 is not None and await self.l2.ping()

        return {
            "healthy": l1_healthy and (l2_connected or not self.config.require_l2_for_health),
            "l1": {"healthy": l1_healthy, "size": self.l1.size()},
            "l2": {"healthy": l2_connected, "connected": l2_connected},
        }


def _default_key(func: Callable, args: tuple, kwargs: dict) -> str:
    arguments = json.dumps([args, kwargs], sort_keys=True, default=str)
    key = f"{func.__module__}.{func.__qualname__}:{arguments}"

    # Use hash for long keys
    if len(key) > MAX_KEY_LENGTH:
        digest = hashlib.sha256(arguments.encode()).hexdigest()
        key = f"{func.__module__}.{func.__qualname__}:hash:{digest}"

    return key


def cached(
    cache: MultiLayerCache,
    func: Callable[..., Any],
    key_generator: Optional[Callable[..., str]] = None,
    **options: Any
) -> Callable[..., Awaitable[Any]]:
    """
    Wrap func with cache-aside lookups against cache.

    Returns a new async callable; func itself may be sync or async.
    ``options`` are passed to ``MultiLayerCache.get_or_set``.

    Example:
        get_user = cached(cache, load_user, lambda user_id: f"user:{user_id}", ttl=60)
        user = await get_user(42)
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        if key_generator is not None:
            key = key_generator(*args, **kwargs)
        else:
            key = _default_key(func, args, kwargs)

        return await cache.get_or_set(key, lambda: func(*args, **kwargs), **options)

    return wrapper
