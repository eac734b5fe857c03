"""Test configuration and fixtures for cache tests."""

import asyncio
import re
import time
from collections import Counter
from typing import Any, Dict, List, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from tiercache.cache_manager import CacheManager
from tiercache.config import (
    CacheConfig, CacheManagerConfig, MemoryCacheConfig, RedisCacheConfig, WarmupConfig
)
from tiercache.metrics import CacheMetrics
from tiercache.multi_layer_cache import MultiLayerCache
from tiercache.redis_cache import RedisCache


def _bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


def _glob_match(pattern: str, key: str) -> bool:
    """Redis MATCH semantics: * ? [...] and backslash escapes."""
    parts = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if char == "\\" and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        elif char == "[" and "]" in pattern[i + 1:]:
            end = pattern.index("]", i + 1)
            parts.append("[" + pattern[i + 1:end].replace("\\", "\\\\") + "]")
            i = end
        else:
            parts.append(re.escape(char))
        i += 1
    return re.fullmatch("".join(parts), key, re.DOTALL) is not None


class FakePipeline:
    """Queues commands and replays them against FakeRedis on execute()."""

    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.commands: List[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.commands = []
        return False

    def set(self, *args, **kwargs):
        self.commands.append(("set", args, kwargs))
        return self

    def delete(self, *args, **kwargs):
        self.commands.append(("delete", args, kwargs))
        return self

    def get(self, *args, **kwargs):
        self.commands.append(("get", args, kwargs))
        return self

    def mget(self, *args, **kwargs):
        self.commands.append(("mget", args, kwargs))
        return self

    def pttl(self, *args, **kwargs):
        self.commands.append(("pttl", args, kwargs))
        return self

    async def execute(self, raise_on_error: bool = True):
        await self.redis._check("execute")
        results = []
        for name, args, kwargs in self.commands:
            try:
                results.append(await getattr(self.redis, name)(*args, **kwargs))
            except ResponseError as e:
                if raise_on_error:
                    raise
                results.append(e)
        self.commands = []
        return results


class FakeRedis:
    """
    In-memory stand-in for redis.asyncio.Redis (decode_responses=False).

    Set ``down`` to simulate an outage, ``latency`` to slow every command
    and ``reject_keys`` to make SET fail for specific keys.
    """

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.expiry: Dict[str, float] = {}
        self.calls: Counter = Counter()
        self.mget_requests: List[List[str]] = []
        self.published: List[tuple] = []
        self.down = False
        self.latency = 0.0
        self.reject_keys: set = set()
        self.closed = False

    async def _check(self, name: str):
        self.calls[name] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        if self.down:
            raise RedisConnectionError("Connection refused")

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.data

    # Keys and strings

    async def ping(self):
        await self._check("ping")
        return True

    async def get(self, key: str) -> Optional[bytes]:
        await self._check("get")
        return self.data[key] if self._alive(key) else None

    async def set(self, key: str, value: Any, ex: Optional[int] = None, nx: bool = False):
        await self._check("set")
        if key in self.reject_keys:
            raise ResponseError(f"rejected {key}")
        if nx and self._alive(key):
            return None
        self.data[key] = _bytes(value)
        if ex:
            self.expiry[key] = time.monotonic() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        await self._check("delete")
        deleted = 0
        for key in keys:
            if self._alive(key):
                del self.data[key]
                self.expiry.pop(key, None)
                deleted += 1
        return deleted

    async def exists(self, *keys: str) -> int:
        await self._check("exists")
        return sum(1 for key in keys if self._alive(key))

    async def expire(self, key: str, seconds: int) -> bool:
        await self._check("expire")
        if not self._alive(key):
            return False
        self.expiry[key] = time.monotonic() + seconds
        return True

    async def ttl(self, key: str) -> int:
        await self._check("ttl")
        if not self._alive(key):
            return -2
        if key not in self.expiry:
            return -1
        return int(round(self.expiry[key] - time.monotonic()))

    async def pttl(self, key: str) -> int:
        await self._check("pttl")
        if not self._alive(key):
            return -2
        if key not in self.expiry:
            return -1
        return int((self.expiry[key] - time.monotonic()) * 1000)

    async def scan(self, cursor: int = 0, match: Optional[str] = None, count: int = 10):
        await self._check("scan")
        keys = sorted(key for key in list(self.data) if self._alive(key))
        page = keys[cursor:cursor + count]
        next_cursor = cursor + count if cursor + count < len(keys) else 0
        found = [key.encode("utf-8") for key in page if match is None or _glob_match(match, key)]
        return next_cursor, found

    async def mget(self, keys: List[str]) -> List[Optional[bytes]]:
        await self._check("mget")
        self.mget_requests.append(list(keys))
        return [self.data[key] if self._alive(key) else None for key in keys]

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def incrby(self, key: str, amount: int = 1) -> int:
        await self._check("incrby")
        current = int(self.data[key]) if self._alive(key) else 0
        self.data[key] = _bytes(current + amount)
        return current + amount

    async def decrby(self, key: str, amount: int = 1) -> int:
        await self._check("decrby")
        current = int(self.data[key]) if self._alive(key) else 0
        self.data[key] = _bytes(current - amount)
        return current - amount

    # Hashes

    async def hget(self, key: str, field: str) -> Optional[bytes]:
        await self._check("hget")
        return self.data.get(key, {}).get(field) if self._alive(key) else None

    async def hset(self, key: str, field: str, value: Any) -> int:
        await self._check("hset")
        bucket = self.data.setdefault(key, {})
        added = 0 if field in bucket else 1
        bucket[field] = _bytes(value)
        return added

    async def hgetall(self, key: str) -> Dict[bytes, bytes]:
        await self._check("hgetall")
        if not self._alive(key):
            return {}
        return {field.encode("utf-8"): value for field, value in self.data[key].items()}

    async def hdel(self, key: str, *fields: str) -> int:
        await self._check("hdel")
        bucket = self.data.get(key, {})
        return sum(1 for field in fields if bucket.pop(field, None) is not None)

    # Lists

    async def lpush(self, key: str, *values: Any) -> int:
        await self._check("lpush")
        items = self.data.setdefault(key, [])
        for value in values:
            items.insert(0, _bytes(value))
        return len(items)

    async def rpush(self, key: str, *values: Any) -> int:
        await self._check("rpush")
        items = self.data.setdefault(key, [])
        items.extend(_bytes(value) for value in values)
        return len(items)

    async def lpop(self, key: str) -> Optional[bytes]:
        await self._check("lpop")
        items = self.data.get(key) or []
        return items.pop(0) if items else None

    async def rpop(self, key: str) -> Optional[bytes]:
        await self._check("rpop")
        items = self.data.get(key) or []
        return items.pop() if items else None

    async def lrange(self, key: str, start: int, stop: int) -> List[bytes]:
        await self._check("lrange")
        items = self.data.get(key) or []
        stop = len(items) + stop if stop < 0 else stop
        return items[start:stop + 1]

    # Sets

    async def sadd(self, key: str, *members: Any) -> int:
        await self._check("sadd")
        bucket = self.data.setdefault(key, set())
        before = len(bucket)
        bucket.update(_bytes(member) for member in members)
        return len(bucket) - before

    async def smembers(self, key: str) -> set:
        await self._check("smembers")
        return set(self.data.get(key) or set())

    async def sismember(self, key: str, member: Any) -> bool:
        await self._check("sismember")
        return _bytes(member) in (self.data.get(key) or set())

    async def srem(self, key: str, *members: Any) -> int:
        await self._check("srem")
        bucket = self.data.get(key) or set()
        removed = 0
        for member in members:
            if _bytes(member) in bucket:
                bucket.discard(_bytes(member))
                removed += 1
        return removed

    # Misc

    async def publish(self, channel: str, message: Any) -> int:
        await self._check("publish")
        self.published.append((channel, message))
        return 1

    async def info(self) -> Dict[str, Any]:
        await self._check("info")
        return {
            "redis_version": "7.2.0",
            "connected_clients": 1,
            "used_memory_human": "1.00M",
            "keyspace_hits": 0,
            "keyspace_misses": 0,
            "evicted_keys": 0,
        }

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_config() -> RedisCacheConfig:
    return RedisCacheConfig(
        url=None,
        host="localhost",
        port=6379,
        password=None,
        require_auth=False,
        operation_timeout=0.5,
        reconnect_interval=0,
        connect_retries=2,
        retry_backoff=0,
        key_prefix="test:",
        default_ttl=3600,
        serializer="json",
    )


@pytest.fixture
def metrics() -> CacheMetrics:
    return CacheMetrics()


@pytest.fixture
def redis_cache(redis_config, fake_redis, metrics) -> RedisCache:
    return RedisCache(redis_config, client=fake_redis, metrics=metrics)


@pytest.fixture
def cache_config(redis_config) -> CacheConfig:
    return CacheConfig(
        namespace="test",
        memory=MemoryCacheConfig(max_entries=100, default_ttl=60),
        redis=redis_config,
        redis_enabled=True,
        predicate_scan_warn_threshold=1000,
        predicate_fetch_batch_size=2,
        maintenance_interval=60,
        require_l2_for_health=True,
    )


@pytest.fixture
def cache(cache_config, redis_cache, metrics) -> MultiLayerCache:
    return MultiLayerCache(cache_config, redis_cache=redis_cache, metrics=metrics)


@pytest.fixture
def warmup_config() -> WarmupConfig:
    return WarmupConfig(
        enabled=True,
        strategies=[],
        batch_size=50,
        delay_between_strategies=0,
        max_duration=5.0,
    )


@pytest.fixture
def manager(cache, warmup_config) -> CacheManager:
    return CacheManager(cache, CacheManagerConfig(warmup=warmup_config))
