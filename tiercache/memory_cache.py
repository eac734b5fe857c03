"""
In-process LRU cache with per-entry TTL (L1).
"""

import re
import threading
import time
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import MemoryCacheConfig
from .metrics import CacheMetrics

logger = logging.getLogger(__name__)

TIER = "l1"


@dataclass
class CacheEntry:
    """Cache entry with metadata."""
    key: str
    value: Any
    created_at: float
    expires_at: float
    ttl: float
    access_count: int = 0
    last_accessed: float = field(default_factory=time.monotonic)

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.expires_at <= (now if now is not None else time.monotonic())


class MemoryCache:
    """
    Bounded LRU cache held in process memory.

    Entries expire passively on access and actively through prune_expired().
    Once max_entries is reached the least recently used entry is evicted.
    """

    def __init__(
        self,
        config: Optional[MemoryCacheConfig] = None,
        metrics: Optional[CacheMetrics] = None
    ):
        self.config = config or MemoryCacheConfig()
        self.config.validate()

        self.max_entries = self.config.max_entries
        self.default_ttl = self.config.default_ttl
        self.metrics = metrics

        # Insertion order doubles as recency order
        self.entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'evictions': 0,
            'expirations': 0,
        }

        self.lock = threading.RLock()

    def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        with self.lock:
            entry = self.entries.get(key)

            if entry is None:
                self.stats['misses'] += 1
                return None

            now = time.monotonic()
            if entry.is_expired(now):
                del self.entries[key]
                self.stats['expirations'] += 1
                self.stats['misses'] += 1
                return None

            entry.access_count += 1
            entry.last_accessed = now
            if self.config.refresh_ttl_on_get:
                entry.expires_at = now + entry.ttl

            self.entries.move_to_end(key)

            self.stats['hits'] += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> bool:
        """Set value in cache; ttl is in seconds."""
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            logger.warning(f"Rejected memory cache entry {key} with non-positive TTL {ttl}")
            return False

        with self.lock:
            if key in self.entries:
                del self.entries[key]

            while len(self.entries) >= self.max_entries:
                victim, _ = self.entries.popitem(last=False)
                self.stats['evictions'] += 1
                logger.debug(f"Evicted memory cache entry {victim}")

            now = time.monotonic()
            self.entries[key] = CacheEntry(
                key=key,
                value=value,
                created_at=now,
                expires_at=now + ttl,
                ttl=ttl,
                last_accessed=now
            )
            self.stats['sets'] += 1

        self._report_size()
        return True

    def delete(self, key: str) -> bool:
        """Delete value from cache."""
        with self.lock:
            if self.entries.pop(key, None) is None:
                return False
            self.stats['deletes'] += 1

        self._report_size()
        return True

    def has(self, key: str) -> bool:
        """Check for a live entry without touching recency."""
        with self.lock:
            entry = self.entries.get(key)
            return entry is not None and not entry.is_expired()

    def keys(self) -> List[str]:
        """Keys of live entries, least recently used first."""
        now = time.monotonic()
        with self.lock:
            return [key for key, entry in self.entries.items() if not entry.is_expired(now)]

    def items(self) -> List[Tuple[str, Any]]:
        now = time.monotonic()
        with self.lock:
            return [
                (key, entry.value)
                for key, entry in self.entries.items()
                if not entry.is_expired(now)
            ]

    def delete_matching(self, match: Callable[[str, Any], bool]) -> int:
        """Remove every live entry for which match(key, value) is true."""
        with self.lock:
            victims = [key for key, value in self.items() if match(key, value)]
            for key in victims:
                del self.entries[key]
            self.stats['deletes'] += len(victims)

        if victims:
            self._report_size()
        return len(victims)

    def delete_regex(self, regex: "re.Pattern") -> int:
        return self.delete_matching(lambda key, _value: regex.match(key) is not None)

    def clear(self, prefix: Optional[str] = None) -> int:
        """Clear all entries, or only those whose key starts with prefix."""
        with self.lock:
            if prefix is None:
                count = len(self.entries)
                self.entries.clear()
            else:
                victims = [key for key in self.entries if key.startswith(prefix)]
                for key in victims:
                    del self.entries[key]
                count = len(victims)

        self._report_size()
        return count

    def prune_expired(self) -> int:
        """Remove expired entries; returns how many were dropped."""
        now = time.monotonic()
        with self.lock:
            expired = [key for key, entry in self.entries.items() if entry.is_expired(now)]
            for key in expired:
                del self.entries[key]
            self.stats['expirations'] += len(expired)

        if expired:
            logger.debug(f"Pruned {len(expired)} expired memory cache entries")
            self._report_size()
        return len(expired)

    def size(self) -> int:
        with self.lock:
            return len(self.entries)

    def _report_size(self):
        if self.metrics is not None:
            self.metrics.update_entries(TIER, len(self.entries))

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self.lock:
            total_requests = self.stats['hits'] + self.stats['misses']
            hit_rate = self.stats['hits'] / total_requests if total_requests > 0 else 0

            return {
                **self.stats,
                'size': len(self.entries),
                'max_size': self.max_entries,
                'hit_rate': round(hit_rate * 100, 2),
                'utilization': round(len(self.entries) / self.max_entries * 100, 2),
            }

    def reset_stats(self):
        with self.lock:
            for name in self.stats:
                self.stats[name] = 0
