"""Cache engine configuration."""

import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError
from .invalidation import DependencyRule, default_dependency_rules, validate_dependency_rules

load_dotenv()

SERIALIZERS = ("json", "msgpack")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


@dataclass
class RedisCacheConfig:
    """Remote store (Redis) configuration."""

    url: Optional[str] = os.getenv("REDIS_URL")
    host: str = os.getenv("REDIS_HOST", "localhost")
    port: int = int(os.getenv("REDIS_PORT", "6379"))
    password: Optional[str] = os.getenv("REDIS_PASSWORD")
    db: int = int(os.getenv("REDIS_DB", "0"))
    require_auth: bool = _env_bool("REDIS_REQUIRE_AUTH", "false")

    # Connection pool settings
    max_connections: int = int(os.getenv("REDIS_MAX_CONNECTIONS", "100"))
    socket_connect_timeout: float = float(os.getenv("REDIS_CONNECT_TIMEOUT", "10"))
    socket_timeout: float = float(os.getenv("REDIS_SOCKET_TIMEOUT", "5"))

    # Every remote call is bounded by this many seconds
    operation_timeout: float = float(os.getenv("REDIS_OPERATION_TIMEOUT", "2"))
    reconnect_interval: float = float(os.getenv("REDIS_RECONNECT_INTERVAL", "5"))
    connect_retries: int = int(os.getenv("REDIS_CONNECT_RETRIES", "3"))
    retry_backoff: float = 0.05

    # Key settings
    key_prefix: str = os.getenv("REDIS_KEY_PREFIX", "tiercache:")
    default_ttl: int = int(os.getenv("REDIS_CACHE_TTL", "3600"))  # 0 = no expiry

    # Serialization
    serializer: str = os.getenv("REDIS_SERIALIZER", "json")
    compression: bool = _env_bool("REDIS_COMPRESSION", "true")
    compression_threshold: int = 1024

    # Keyspace paging
    scan_count: int = 100
    delete_batch_size: int = 500

    def validate(self):
        """Fail fast on unusable settings."""
        if not self.url and not self.host:
            raise ConfigurationError("Redis host or url must be configured")
        if not self.url and not (0 < self.port < 65536):
            raise ConfigurationError(f"Invalid Redis port: {self.port}")
        if self.require_auth and not self.password and not (self.url and "@" in self.url):
            raise ConfigurationError("Redis credentials required but REDIS_PASSWORD is not set")
        if self.default_ttl < 0:
            raise ConfigurationError(f"Invalid Redis default TTL: {self.default_ttl}")
        if self.serializer not in SERIALIZERS:
            raise ConfigurationError(
                f"Unknown serializer {self.serializer!r}, expected one of {SERIALIZERS}"
            )
        if self.operation_timeout <= 0:
            raise ConfigurationError("Redis operation timeout must be positive")
        if self.connect_retries < 1:
            raise ConfigurationError("Redis connect retries must be at least 1")
        if self.scan_count < 1 or self.delete_batch_size < 1:
            raise ConfigurationError("Redis scan and delete batch sizes must be positive")

    @property
    def connection_url(self) -> str:
        """Get Redis connection URL."""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


@dataclass
class MemoryCacheConfig:
    """In-process tier configuration."""

    max_entries: int = int(os.getenv("CACHE_MEMORY_MAX_SIZE", "1000"))
    default_ttl: float = float(os.getenv("CACHE_MEMORY_TTL", "300"))
    refresh_ttl_on_get: bool = False

    def validate(self):
        if self.max_entries < 1:
            raise ConfigurationError(f"Memory cache max entries must be positive: {self.max_entries}")
        if self.default_ttl <= 0:
            raise ConfigurationError(f"Invalid memory cache TTL: {self.default_ttl}")


@dataclass
class CacheConfig:
    """Multi-layer cache configuration."""

    namespace: str = os.getenv("CACHE_NAMESPACE", "cache")
    memory: MemoryCacheConfig = field(default_factory=MemoryCacheConfig)
    redis: RedisCacheConfig = field(default_factory=RedisCacheConfig)
    redis_enabled: bool = _env_bool("CACHE_REDIS_ENABLED", "true")

    # Predicate invalidation over more remote keys than this is logged
    predicate_scan_warn_threshold: int = 1000
    predicate_fetch_batch_size: int = 100

    # Maintenance ticker (L1 pruning, L2 reconnect attempt)
    maintenance_interval: float = 60.0

    # When False a missing L2 does not mark the cache unhealthy
    require_l2_for_health: bool = _env_bool("CACHE_REQUIRE_L2", "true")

    def validate(self):
        if not self.namespace:
            raise ConfigurationError("Cache namespace must not be empty")
        if self.maintenance_interval <= 0:
            raise ConfigurationError("Maintenance interval must be positive")
        if self.predicate_fetch_batch_size < 1:
            raise ConfigurationError("Predicate fetch batch size must be positive")
        self.memory.validate()
        if self.redis_enabled:
            self.redis.validate()


@dataclass
class WarmupConfig:
    """Cache warmup configuration."""

    enabled: bool = _env_bool("CACHE_WARMUP_ENABLED", "true")
    strategies: List[str] = field(
        default_factory=lambda: _env_list(
            "CACHE_WARMUP_STRATEGIES", "popular_content,user_preferences,recent_data"
        )
    )
    batch_size: int = 50
    delay_between_strategies: float = 0.1  # seconds
    max_duration: float = 30.0  # seconds

    def validate(self):
        if self.batch_size < 1:
            raise ConfigurationError(f"Warmup batch size must be positive: {self.batch_size}")
        if self.delay_between_strategies < 0:
            raise ConfigurationError("Warmup delay must not be negative")
        if self.max_duration <= 0:
            raise ConfigurationError("Warmup max duration must be positive")


@dataclass
class CacheManagerConfig:
    """Tag dependency table and warmup settings."""

    dependency_rules: Dict[str, DependencyRule] = field(default_factory=default_dependency_rules)
    warmup: WarmupConfig = field(default_factory=WarmupConfig)

    def validate(self):
        validate_dependency_rules(self.dependency_rules)
        self.warmup.validate()
