"""
Error taxonomy for the cache engine.

Only configuration validation, explicit connects and atomic counters raise
these to callers. Everything else is caught inside the engine and degraded
to a miss or a ``False`` result.
"""

from typing import Optional


class CacheError(Exception):
    """Base class for cache engine errors."""


class ConnectivityError(CacheError):
    """Remote store unreachable or a call exceeded its timeout."""


class SerializationError(CacheError):
    """Stored value could not be encoded or decoded."""


class ConfigurationError(CacheError):
    """Invalid or incomplete configuration detected at construction."""


class InvalidationScopeError(CacheError):
    """Predicate invalidation had to inspect a large remote keyspace."""

    def __init__(self, scanned: int, threshold: int):
        self.scanned = scanned
        self.threshold = threshold
        super().__init__(
            f"Predicate invalidation scanned {scanned} remote keys "
            f"(warning threshold {threshold}); this is O(keyspace)"
        )


class PartialBatchFailure(CacheError):
    """A batched write where only some keys were stored."""

    def __init__(self, succeeded: int, total: int, operation: str = "mset", cause: Optional[BaseException] = None):
        self.succeeded = succeeded
        self.total = total
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} stored {succeeded}/{total} keys")

    @property
    def failed(self) -> int:
        return self.total - self.succeeded
