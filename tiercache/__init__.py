"""
Multi-tier cache and invalidation engine.

This package provides:
- In-process LRU+TTL cache (L1)
- Redis cache client (L2)
- Multi-layer cache with cache-aside, write-through and write-behind helpers
- Tag-based cascading invalidation and data-change hooks
- Bounded cache warmup
- Performance monitoring
"""

from .cache_manager import CacheInvalidationHooks, CacheManager, Tag
from .config import CacheConfig, CacheManagerConfig, MemoryCacheConfig, RedisCacheConfig, WarmupConfig
from .exceptions import (
    CacheError,
    ConfigurationError,
    ConnectivityError,
    InvalidationScopeError,
    PartialBatchFailure,
    SerializationError,
)
from .invalidation import (
    DataChangeEvent,
    DependencyRule,
    PredicatePattern,
    RegexPattern,
    WildcardPattern,
    default_dependency_rules,
)
from .memory_cache import CacheEntry, MemoryCache
from .metrics import CacheMetrics
from .monitoring import AlertThresholds, CachePerformanceMonitor
from .multi_layer_cache import MultiLayerCache, cached
from .redis_cache import RedisCache
from .scheduler import PeriodicTask
from .warmup import WarmupItem, WarmupResult, WarmupStrategy

__all__ = [
    'CacheManager',
    'CacheInvalidationHooks',
    'Tag',
    'CacheConfig',
    'CacheManagerConfig',
    'MemoryCacheConfig',
    'RedisCacheConfig',
    'WarmupConfig',
    'CacheError',
    'ConfigurationError',
    'ConnectivityError',
    'InvalidationScopeError',
    'PartialBatchFailure',
    'SerializationError',
    'DataChangeEvent',
    'DependencyRule',
    'PredicatePattern',
    'RegexPattern',
    'WildcardPattern',
    'default_dependency_rules',
    'CacheEntry',
    'MemoryCache',
    'CacheMetrics',
    'AlertThresholds',
    'CachePerformanceMonitor',
    'MultiLayerCache',
    'cached',
    'RedisCache',
    'PeriodicTask',
    'WarmupItem',
    'WarmupResult',
    'WarmupStrategy',
]
