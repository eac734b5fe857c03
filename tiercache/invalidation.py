"""
Cache invalidation patterns, dependency rules and entity key patterns.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union
import logging

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WildcardPattern:
    """Exact key or glob with ``*`` / ``?`` wildcards."""
    pattern: str

    @property
    def is_exact(self) -> bool:
        return "*" not in self.pattern and "?" not in self.pattern


@dataclass(frozen=True)
class RegexPattern:
    """Regular expression matched against logical keys."""
    regex: "re.Pattern"


@dataclass(frozen=True)
class PredicatePattern:
    """Callable ``(key, value) -> bool``; expensive on the remote tier."""
    predicate: Callable[[str, Any], bool]


InvalidationPattern = Union[WildcardPattern, RegexPattern, PredicatePattern]


def coerce_pattern(pattern: Any) -> InvalidationPattern:
    """Turn a str, compiled regex or callable into a pattern variant."""
    if isinstance(pattern, (WildcardPattern, RegexPattern, PredicatePattern)):
        return pattern
    if isinstance(pattern, str):
        return WildcardPattern(pattern)
    if isinstance(pattern, re.Pattern):
        return RegexPattern(pattern)
    if callable(pattern):
        return PredicatePattern(pattern)
    raise TypeError(f"Unsupported invalidation pattern: {pattern!r}")


def glob_to_regex(pattern: str) -> "re.Pattern":
    """Convert a store-style glob into an anchored regex."""
    parts = []
    for char in pattern:
        if char == "*":
            parts.append(".*")
        elif char == "?":
            parts.append(".")
        else:
            parts.append(re.escape(char))

    return re.compile(f"^{''.join(parts)}$")


def glob_escape(text: str, wildcards: bool = False) -> str:
    """
    Backslash-escape text for a Redis MATCH pattern.

    With ``wildcards`` the ``*`` and ``?`` characters stay active, so a
    glob accepted by ``glob_to_regex`` matches the same keys on Redis.
    """
    special = "[]\\" if wildcards else "*?[]\\"
    return "".join(f"\\{char}" if char in special else char for char in text)


@dataclass
class DependencyRule:
    """Invalidation rule for one tag."""
    triggers: List[str] = field(default_factory=list)  # "entity:operation"
    dependencies: List[str] = field(default_factory=list)  # dependent tag names
    cascading: bool = False


@dataclass(frozen=True)
class DataChangeEvent:
    """A write observed in the system of record."""
    entity: str
    operation: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    @property
    def trigger(self) -> str:
        return f"{self.entity}:{self.operation}"


def default_dependency_rules() -> Dict[str, DependencyRule]:
    """Tag dependency table used when none is configured."""
    return {
        "user": DependencyRule(
            triggers=["user:update", "user:delete"],
            dependencies=["user:profile", "user:preferences", "user:permissions"],
            cascading=True,
        ),
        "post": DependencyRule(
            triggers=["post:create", "post:update", "post:delete"],
            dependencies=["post:list", "post:category", "post:author"],
            cascading=True,
        ),
        "product": DependencyRule(
            triggers=["product:update", "product:delete", "inventory:update"],
            dependencies=["product:list", "product:category", "product:search"],
            cascading=True,
        ),
        "order": DependencyRule(
            triggers=["order:create", "order:update", "order:status"],
            dependencies=["order:user", "order:summary", "analytics:sales"],
            cascading=False,
        ),
    }


def find_dependency_cycle(rules: Mapping[str, DependencyRule]) -> Optional[List[str]]:
    """Return one cycle among cascading rules, or None if the graph is acyclic."""
    visiting: Set[str] = set()
    done: Set[str] = set()
    path: List[str] = []

    def visit(tag: str) -> Optional[List[str]]:
        if tag in done:
            return None
        if tag in visiting:
            return path[path.index(tag):] + [tag]

        rule = rules.get(tag)
        if rule is None or not rule.cascading:
            done.add(tag)
            return None

        visiting.add(tag)
        path.append(tag)
        for dependency in rule.dependencies:
            cycle = visit(dependency)
            if cycle:
                return cycle
        path.pop()
        visiting.discard(tag)
        done.add(tag)
        return None

    for tag in rules:
        cycle = visit(tag)
        if cycle:
            return cycle
    return None


def validate_dependency_rules(rules: Mapping[str, DependencyRule]):
    """Reject malformed triggers and cascading cycles."""
    for tag, rule in rules.items():
        for trigger in rule.triggers:
            entity, sep, operation = trigger.partition(":")
            if not sep or not entity or not operation:
                raise ConfigurationError(
                    f"Trigger {trigger!r} for tag {tag!r} must look like 'entity:operation'"
                )

    cycle = find_dependency_cycle(rules)
    if cycle:
        raise ConfigurationError(f"Cascading tag dependency cycle: {' -> '.join(cycle)}")


def tags_for_trigger(rules: Mapping[str, DependencyRule], trigger: str) -> List[str]:
    """Tags whose rule lists the trigger, in table order."""
    return [tag for tag, rule in rules.items() if trigger in rule.triggers]


# Entity key patterns

KeyPatternBuilder = Callable[[Mapping[str, Any], str], List[str]]


def _field(payload: Mapping[str, Any], *names: str) -> Optional[Any]:
    for name in names:
        value = payload.get(name)
        if value is not None and value != "":
            return value
    return None


def user_key_patterns(payload: Mapping[str, Any], operation: str) -> List[str]:
    user_id = _field(payload, "id", "user_id")
    patterns = []
    if user_id is not None:
        patterns += [
            f"user:{user_id}:*",
            f"user:profile:{user_id}",
            f"user:preferences:{user_id}",
            f"user:permissions:{user_id}",
        ]
    if operation == "delete":
        patterns.append("user:list:*")
    return patterns


def post_key_patterns(payload: Mapping[str, Any], operation: str) -> List[str]:
    post_id = _field(payload, "id", "post_id")
    category = _field(payload, "category")
    author_id = _field(payload, "author_id", "authorId")

    patterns = []
    if post_id is not None:
        patterns.append(f"post:{post_id}:*")
    patterns.append("post:list:*")
    if category is not None:
        patterns.append(f"post:category:{category}:*")
    if author_id is not None:
        patterns.append(f"post:author:{author_id}:*")
    return patterns


def product_key_patterns(payload: Mapping[str, Any], operation: str) -> List[str]:
    product_id = _field(payload, "id", "product_id")
    category = _field(payload, "category")

    patterns = []
    if product_id is not None:
        patterns.append(f"product:{product_id}:*")
    patterns += ["product:list:*", "product:search:*"]
    if category is not None:
        patterns.append(f"product:category:{category}:*")
    return patterns


def order_key_patterns(payload: Mapping[str, Any], operation: str) -> List[str]:
    order_id = _field(payload, "id", "order_id")
    user_id = _field(payload, "user_id", "userId")

    patterns = []
    if order_id is not None:
        patterns.append(f"order:{order_id}:*")
    if user_id is not None:
        patterns.append(f"order:user:{user_id}:*")
    patterns.append("analytics:sales:*")
    return patterns


def default_key_pattern_builders() -> Dict[str, KeyPatternBuilder]:
    return {
        "user": user_key_patterns,
        "post": post_key_patterns,
        "product": product_key_patterns,
        "order": order_key_patterns,
    }


def dedupe(patterns: Iterable[str]) -> List[str]:
    """Drop repeated patterns while keeping order."""
    seen: Set[str] = set()
    unique = []
    for pattern in patterns:
        if pattern not in seen:
            seen.add(pattern)
            unique.append(pattern)
    return unique
