"""
Redis remote store client (L2) with fail-open degradation.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, List, Mapping, Optional, Set, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import RedisCacheConfig
from .exceptions import CacheError, ConnectivityError, PartialBatchFailure, SerializationError
from .invalidation import glob_escape
from .metrics import CacheMetrics, TierStats
from .serialization import Serializer

logger = logging.getLogger(__name__)

TIER = "l2"


def _decode(value: Any) -> str:
    return value.decode('utf-8') if isinstance(value, bytes) else value


class RedisCache:
    """
    Async Redis client used as the remote cache tier.

    Reads, deletes and existence checks fail open (None / False / 0) while
    the store is unreachable; counters and explicit connects raise.
    """

    def __init__(
        self,
        config: Optional[RedisCacheConfig] = None,
        client: Optional[Any] = None,
        metrics: Optional[CacheMetrics] = None
    ):
        self.config = config or RedisCacheConfig()
        self.config.validate()

        self.serializer = Serializer(
            self.config.serializer,
            compression=self.config.compression,
            compression_threshold=self.config.compression_threshold
        )
        self.metrics = metrics or CacheMetrics()
        self.stats = TierStats()

        self.client = client if client is not None else self._build_client()
        self._connected = False
        self._last_failure: Optional[float] = None

    def _build_client(self) -> redis.Redis:
        """Create a pooled client; no connection is opened until first use."""
        options = dict(
            max_connections=self.config.max_connections,
            decode_responses=False,  # We handle encoding/decoding
            socket_connect_timeout=self.config.socket_connect_timeout,
            socket_timeout=self.config.socket_timeout,
        )

        if self.config.url:
            return redis.from_url(self.config.url, **options)

        pool = redis.ConnectionPool(
            host=self.config.host,
            port=self.config.port,
            password=self.config.password,
            db=self.config.db,
            **options
        )
        return redis.Redis(connection_pool=pool)

    # Connection state

    async def connect(self):
        """Connect to Redis, retrying with backoff; raises ConnectivityError."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.connect_retries),
            wait=wait_exponential(multiplier=self.config.retry_backoff, max=2),
            retry=retry_if_exception_type(ConnectivityError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await self._call("ping", self.client.ping())

        self._mark_connected()
        logger.info("Redis cache connected")

    async def close(self):
        """Close Redis connection."""
        try:
            if hasattr(self.client, "aclose"):
                await self.client.aclose()
            else:
                await self.client.close()
        except RedisError as e:
            logger.warning(f"Redis close error: {e}")
        self._connected = False
        logger.info("Redis cache closed")

    def is_connected(self) -> bool:
        return self._connected

    async def ping(self) -> bool:
        """Check Redis connection health."""
        try:
            await self._call("ping", self.client.ping())
        except CacheError:
            return False
        self._mark_connected()
        return True

    async def ensure_connected(self) -> bool:
        """Return connectivity, probing at most once per reconnect interval."""
        if self._connected:
            return True

        if (self._last_failure is not None and
                time.monotonic() - self._last_failure < self.config.reconnect_interval):
            return False

        return await self.ping()

    def _mark_connected(self):
        if not self._connected and self._last_failure is not None:
            logger.info("Redis connectivity restored")
        self._connected = True
        self._last_failure = None

    def _mark_disconnected(self, error: BaseException):
        if self._connected:
            logger.warning(f"Redis connectivity lost: {error!r}")
        self._connected = False
        self._last_failure = time.monotonic()

    async def _call(self, operation: str, command: Awaitable) -> Any:
        """Run one command under the per-call timeout, recording metrics."""
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(command, timeout=self.config.operation_timeout)
        except (asyncio.TimeoutError, RedisConnectionError, RedisTimeoutError, OSError) as e:
            self._record_error(operation)
            self._mark_disconnected(e)
            raise ConnectivityError(f"Redis {operation} failed: {e!r}") from e
        except RedisError as e:
            self._record_error(operation)
            raise CacheError(f"Redis {operation} failed: {e}") from e

        duration = time.perf_counter() - start
        self.stats.total_time += duration * 1000
        self.stats.operations += 1
        self.metrics.track_operation(TIER, operation, "ok", duration)
        return result

    def _record_error(self, operation: str):
        self.stats.errors += 1
        self.metrics.track_operation(TIER, operation, "error")

    def _record_hit(self, count: int = 1):
        self.stats.hits += count

    def _record_miss(self, count: int = 1):
        self.stats.misses += count

    # Keys and values

    def build_key(self, *parts: Any) -> str:
        """Join key parts with ':'."""
        return ":".join(str(part) for part in parts)

    def _make_key(self, key: str) -> str:
        """Create prefixed key."""
        return f"{self.config.key_prefix}{key}"

    def _strip_key(self, full_key: Any) -> str:
        key = _decode(full_key)
        prefix = self.config.key_prefix
        return key[len(prefix):] if prefix and key.startswith(prefix) else key

    def _load(self, key: str, data: Any) -> Optional[Any]:
        """Deserialize, treating undecodable payloads as a miss."""
        try:
            return self.serializer.loads(data)
        except SerializationError as e:
            logger.warning(f"Redis value for key {key} could not be decoded, treating as miss: {e}")
            return None

    def _ttl_for(self, ttl: Optional[int]) -> Optional[int]:
        ttl = self.config.default_ttl if ttl is None else ttl
        return ttl if ttl and ttl > 0 else None

    # Basic operations

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        if not await self.ensure_connected():
            self._record_miss()
            return None

        try:
            data = await self._call("get", self.client.get(self._make_key(key)))
        except CacheError as e:
            logger.error(f"Redis get error for key {key}: {e}")
            self._record_miss()
            return None

        value = self._load(key, data) if data is not None else None
        if value is None:
            self._record_miss()
            return None

        self._record_hit()
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, nx: bool = False) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds (config default when None, 0 = no expiry)
            nx: Only set if key doesn't exist
        """
        if not await self.ensure_connected():
            self.stats.errors += 1
            return False

        try:
            data = self.serializer.dumps(value)
        except SerializationError as e:
            logger.error(f"Redis set error for key {key}: {e}")
            self.stats.errors += 1
            return False

        try:
            result = await self._call(
                "set",
                self.client.set(self._make_key(key), data, ex=self._ttl_for(ttl), nx=nx)
            )
        except CacheError as e:
            logger.error(f"Redis set error for key {key}: {e}")
            return False

        if not result:
            return False

        self.stats.sets += 1
        return True

    async def delete(self, *keys: str) -> int:
        """Delete keys; returns the number removed."""
        if not keys or not await self.ensure_connected():
            return 0

        try:
            deleted = await self._call(
                "delete", self.client.delete(*[self._make_key(key) for key in keys])
            )
        except CacheError as e:
            logger.error(f"Redis delete error for keys {list(keys)[:10]}: {e}")
            return 0

        self.stats.deletes += 1
        return int(deleted or 0)

    async def exists(self, key: str) -> bool:
        """Check if key exists."""
        if not await self.ensure_connected():
            return False

        try:
            return await self._call("exists", self.client.exists(self._make_key(key))) > 0
        except CacheError as e:
            logger.error(f"Redis exists error for key {key}: {e}")
            return False

    async def expire(self, key: str, ttl: int) -> bool:
        """Set expiration for key."""
        if not await self.ensure_connected():
            return False

        try:
            return bool(await self._call("expire", self.client.expire(self._make_key(key), ttl)))
        except CacheError as e:
            logger.error(f"Redis expire error for key {key}: {e}")
            return False

    async def ttl(self, key: str) -> int:
        """Get remaining TTL for key (-2 missing, -1 no expiry or unavailable)."""
        if not await self.ensure_connected():
            return -1

        try:
            return int(await self._call("ttl", self.client.ttl(self._make_key(key))))
        except CacheError as e:
            logger.error(f"Redis ttl error for key {key}: {e}")
            return -1

    async def keys(self, pattern: str = "*") -> List[str]:
        """
        List keys matching a Redis glob, paging through the keyspace with SCAN.

        The key prefix is matched literally; pattern is passed to MATCH as is.
        """
        if not await self.ensure_connected():
            return []

        full_pattern = glob_escape(self.config.key_prefix) + pattern
        found: List[str] = []
        cursor = 0

        try:
            while True:
                cursor, batch = await self._call(
                    "scan",
                    self.client.scan(cursor, match=full_pattern, count=self.config.scan_count)
                )
                found.extend(self._strip_key(key) for key in batch)
                if int(cursor) == 0:
                    break
        except CacheError as e:
            logger.error(f"Redis scan error for pattern {pattern}: {e}")
            return []

        # SCAN may return a key more than once
        return list(dict.fromkeys(found))

    async def flush_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob; returns count removed."""
        keys = await self.keys(pattern)
        deleted = 0

        batch_size = self.config.delete_batch_size
        for i in range(0, len(keys), batch_size):
            deleted += await self.delete(*keys[i:i + batch_size])

        return deleted

    async def mget(self, keys: List[str]) -> List[Optional[Any]]:
        """Get multiple values, aligned with keys."""
        if not keys:
            return []
        if not await self.ensure_connected():
            self._record_miss(len(keys))
            return [None] * len(keys)

        try:
            values = await self._call("mget", self.client.mget([self._make_key(key) for key in keys]))
        except CacheError as e:
            logger.error(f"Redis mget error: {e}")
            self._record_miss(len(keys))
            return [None] * len(keys)

        results: List[Optional[Any]] = []
        for key, data in zip(keys, values):
            value = self._load(key, data) if data is not None else None
            if value is None:
                self._record_miss()
            else:
                self._record_hit()
            results.append(value)

        return results

    def _load_with_ttl(self, key: str, data: Any, pttl: Any) -> Tuple[Optional[Any], Optional[float]]:
        # PTTL: -2 key gone, -1 no expiry, otherwise milliseconds left
        value = self._load(key, data) if data is not None else None
        if value is None or pttl is None or int(pttl) == -2:
            self._record_miss()
            return None, None

        self._record_hit()
        pttl = int(pttl)
        return value, (pttl / 1000 if pttl >= 0 else None)

    async def get_with_ttl(self, key: str) -> Tuple[Optional[Any], Optional[float]]:
        """
        Get value together with its remaining lifetime in seconds.

        GET and PTTL run in one pipeline. The lifetime is None when the key
        has no expiry; a miss returns (None, None).
        """
        if not await self.ensure_connected():
            self._record_miss()
            return None, None

        full_key = self._make_key(key)
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.get(full_key)
                pipe.pttl(full_key)
                data, pttl = await self._call("get", pipe.execute())
        except CacheError as e:
            logger.error(f"Redis get error for key {key}: {e}")
            self._record_miss()
            return None, None

        return self._load_with_ttl(key, data, pttl)

    async def mget_with_ttl(self, keys: List[str]) -> List[Tuple[Optional[Any], Optional[float]]]:
        """Get multiple values with their remaining lifetimes, aligned with keys."""
        if not keys:
            return []
        if not await self.ensure_connected():
            self._record_miss(len(keys))
            return [(None, None)] * len(keys)

        full_keys = [self._make_key(key) for key in keys]
        try:
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.mget(full_keys)
                for full_key in full_keys:
                    pipe.pttl(full_key)
                values, *lifetimes = await self._call("mget", pipe.execute())
        except CacheError as e:
            logger.error(f"Redis mget error: {e}")
            self._record_miss(len(keys))
            return [(None, None)] * len(keys)

        return [
            self._load_with_ttl(key, data, pttl)
            for key, data, pttl in zip(keys, values, lifetimes)
        ]

    async def mset(self, items: Mapping[str, Any], ttl: Optional[int] = None) -> bool:
        """Set multiple values in one pipeline; True only if every key was stored."""
        if not items:
            return True
        if not await self.ensure_connected():
            self.stats.errors += 1
            return False

        expiry = self._ttl_for(ttl)
        total = len(items)
        encoded = 0

        try:
            async with self.client.pipeline(transaction=False) as pipe:
                for key, value in items.items():
                    try:
                        data = self.serializer.dumps(value)
                    except SerializationError as e:
                        logger.error(f"Redis mset skipped key {key}: {e}")
                        continue
                    pipe.set(self._make_key(key), data, ex=expiry)
                    encoded += 1

                results = await self._call("mset", pipe.execute(raise_on_error=False)) if encoded else []
        except CacheError as e:
            logger.error(f"Redis mset error: {e}")
            return False

        succeeded = sum(1 for result in results if result and not isinstance(result, Exception))
        self.stats.sets += succeeded

        if succeeded < total:
            logger.warning(f"Redis {PartialBatchFailure(succeeded, total)}")
            return False

        return True

    # Counters

    async def increment(self, key: str, amount: int = 1) -> int:
        """Atomically increment a counter; raises when the store is unreachable."""
        if not await self.ensure_connected():
            raise ConnectivityError("Redis not connected")
        return int(await self._call("incrby", self.client.incrby(self._make_key(key), amount)))

    async def decrement(self, key: str, amount: int = 1) -> int:
        """Atomically decrement a counter; raises when the store is unreachable."""
        if not await self.ensure_connected():
            raise ConnectivityError("Redis not connected")
        return int(await self._call("decrby", self.client.decrby(self._make_key(key), amount)))

    # Hash operations

    def _load_field(self, data: Any) -> Any:
        """Hash fields keep the raw string when they are not serialized values."""
        try:
            return self.serializer.loads(data)
        except SerializationError:
            return _decode(data)

    async def hget(self, hash_key: str, field: str) -> Optional[Any]:
        """Get a field from a hash."""
        if not await self.ensure_connected():
            return None
        try:
            data = await self._call("hget", self.client.hget(self._make_key(hash_key), field))
        except CacheError as e:
            logger.error(f"Redis hget error for {hash_key}.{field}: {e}")
            return None
        return self._load_field(data) if data is not None else None

    async def hset(self, hash_key: str, field: str, value: Any) -> bool:
        """Set a field in a hash; True when the field is new."""
        if not await self.ensure_connected():
            return False
        try:
            data = self.serializer.dumps(value)
            return bool(await self._call("hset", self.client.hset(self._make_key(hash_key), field, data)))
        except CacheError as e:
            logger.error(f"Redis hset error for {hash_key}.{field}: {e}")
            return False

    async def hgetall(self, hash_key: str) -> Dict[str, Any]:
        """Get all fields from a hash."""
        if not await self.ensure_connected():
            return {}
        try:
            raw = await self._call("hgetall", self.client.hgetall(self._make_key(hash_key)))
        except CacheError as e:
            logger.error(f"Redis hgetall error for {hash_key}: {e}")
            return {}
        return {_decode(field): self._load_field(value) for field, value in raw.items()}

    async def hdel(self, hash_key: str, *fields: str) -> int:
        """Delete fields from a hash."""
        if not fields or not await self.ensure_connected():
            return 0
        try:
            return int(await self._call("hdel", self.client.hdel(self._make_key(hash_key), *fields)))
        except CacheError as e:
            logger.error(f"Redis hdel error for {hash_key}: {e}")
            return 0

    # List operations

    async def _push(self, operation: str, list_key: str, values: tuple) -> int:
        if not values or not await self.ensure_connected():
            return 0
        try:
            encoded = [self.serializer.dumps(value) for value in values]
            command = getattr(self.client, operation)
            return int(await self._call(operation, command(self._make_key(list_key), *encoded)))
        except CacheError as e:
            logger.error(f"Redis {operation} error for {list_key}: {e}")
            return 0

    async def lpush(self, list_key: str, *values: Any) -> int:
        """Push values to the left of a list."""
        return await self._push("lpush", list_key, values)

    async def rpush(self, list_key: str, *values: Any) -> int:
        """Push values to the right of a list."""
        return await self._push("rpush", list_key, values)

    async def _pop(self, operation: str, list_key: str) -> Optional[Any]:
        if not await self.ensure_connected():
            return None
        try:
            command = getattr(self.client, operation)
            data = await self._call(operation, command(self._make_key(list_key)))
        except CacheError as e:
            logger.error(f"Redis {operation} error for {list_key}: {e}")
            return None
        return self._load(list_key, data) if data is not None else None

    async def lpop(self, list_key: str) -> Optional[Any]:
        return await self._pop("lpop", list_key)

    async def rpop(self, list_key: str) -> Optional[Any]:
        return await self._pop("rpop", list_key)

    async def lrange(self, list_key: str, start: int, stop: int) -> List[Any]:
        """Get a range of values from a list."""
        if not await self.ensure_connected():
            return []
        try:
            raw = await self._call("lrange", self.client.lrange(self._make_key(list_key), start, stop))
        except CacheError as e:
            logger.error(f"Redis lrange error for {list_key}: {e}")
            return []
        return [self._load(list_key, item) for item in raw]

    # Set operations

    async def sadd(self, set_key: str, *members: Any) -> int:
        """Add members to a set."""
        if not members or not await self.ensure_connected():
            return 0
        try:
            encoded = [self.serializer.dumps(member) for member in members]
            return int(await self._call("sadd", self.client.sadd(self._make_key(set_key), *encoded)))
        except CacheError as e:
            logger.error(f"Redis sadd error for {set_key}: {e}")
            return 0

    async def smembers(self, set_key: str) -> List[Any]:
        """Get all members of a set."""
        if not await self.ensure_connected():
            return []
        try:
            raw: Set[bytes] = await self._call("smembers", self.client.smembers(self._make_key(set_key)))
        except CacheError as e:
            logger.error(f"Redis smembers error for {set_key}: {e}")
            return []
        return [self._load(set_key, member) for member in raw]

    async def sismember(self, set_key: str, member: Any) -> bool:
        """Check if a value is in a set."""
        if not await self.ensure_connected():
            return False
        try:
            encoded = self.serializer.dumps(member)
            return bool(await self._call("sismember", self.client.sismember(self._make_key(set_key), encoded)))
        except CacheError as e:
            logger.error(f"Redis sismember error for {set_key}: {e}")
            return False

    async def srem(self, set_key: str, *members: Any) -> int:
        """Remove members from a set."""
        if not members or not await self.ensure_connected():
            return 0
        try:
            encoded = [self.serializer.dumps(member) for member in members]
            return int(await self._call("srem", self.client.srem(self._make_key(set_key), *encoded)))
        except CacheError as e:
            logger.error(f"Redis srem error for {set_key}: {e}")
            return 0

    # Pub/Sub operations

    async def publish(self, channel: str, message: Any) -> int:
        """Publish a message; returns the number of receivers."""
        if not await self.ensure_connected():
            return 0
        try:
            data = self.serializer.dumps(message)
            return int(await self._call("publish", self.client.publish(self._make_key(channel), data)))
        except CacheError as e:
            logger.error(f"Redis publish error for channel {channel}: {e}")
            return 0

    @asynccontextmanager
    async def subscribe(self, *channels: str):
        """Subscribe to channels; raises ConnectivityError when unreachable."""
        if not await self.ensure_connected():
            raise ConnectivityError("Redis not connected")

        pubsub = self.client.pubsub()
        full_channels = [self._make_key(channel) for channel in channels]
        await self._call("subscribe", pubsub.subscribe(*full_channels))

        try:
            yield pubsub
        finally:
            await pubsub.unsubscribe(*full_channels)
            await pubsub.close()

    async def listen(self, pubsub: Any) -> AsyncIterator[Dict[str, Any]]:
        """Yield decoded messages from a subscription."""
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            data = message.get("data")
            try:
                payload = self.serializer.loads(data)
            except SerializationError as e:
                logger.error(f"Failed to decode Redis message: {e}")
                payload = _decode(data)
            yield {"channel": self._strip_key(message.get("channel")), "data": payload}

    # Monitoring

    def get_metrics(self) -> Dict[str, Any]:
        """Operation counters with hit rate (%) and average latency (ms)."""
        metrics = self.stats.to_dict()
        metrics["connected"] = self._connected
        self.metrics.update_hit_ratio(TIER, self.stats.hit_rate)
        return metrics

    def reset_metrics(self):
        self.stats = TierStats()

    async def info(self) -> Dict[str, Any]:
        """Get Redis server information."""
        if not await self.ensure_connected():
            return {}
        try:
            info = await self._call("info", self.client.info())
        except CacheError as e:
            logger.error(f"Redis info error: {e}")
            return {}

        return {
            'version': info.get('redis_version'),
            'connected_clients': info.get('connected_clients'),
            'used_memory_human': info.get('used_memory_human'),
            'keyspace_hits': info.get('keyspace_hits'),
            'keyspace_misses': info.get('keyspace_misses'),
            'evicted_keys': info.get('evicted_keys')
        }
