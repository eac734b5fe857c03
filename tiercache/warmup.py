"""Cache warmup strategy, item and result types."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

WarmupFetch = Callable[[int], Union[Awaitable[Iterable["WarmupItem"]], Iterable["WarmupItem"]]]


@dataclass
class WarmupItem:
    """One key/value pair to pre-populate; ttl falls back to the strategy's."""
    key: str
    value: Any
    ttl: Optional[float] = None


@dataclass
class WarmupStrategy:
    """
    Named loader that reads a bounded batch from the system of record.

    ``fetch`` receives the configured batch size and returns WarmupItems,
    either directly or as an awaitable.
    """
    name: str
    fetch: WarmupFetch
    ttl: float = 3600


@dataclass
class WarmupResult:
    success: bool
    warmed_keys: int
    duration: float  # seconds
    completed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def group_by_ttl(items: Iterable[WarmupItem], default_ttl: float) -> Dict[float, Dict[str, Any]]:
    """Bucket items by effective TTL so each bucket can be written with one mset."""
    groups: Dict[float, Dict[str, Any]] = {}
    for item in items:
        ttl = item.ttl if item.ttl is not None else default_ttl
        groups.setdefault(ttl, {})[item.key] = item.value
    return groups
