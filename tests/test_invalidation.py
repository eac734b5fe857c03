"""Tests for invalidation patterns, dependency rules and entity key patterns."""

import re

import pytest

from tiercache.invalidation import (
    DataChangeEvent,
    DependencyRule,
    PredicatePattern,
    RegexPattern,
    WildcardPattern,
    coerce_pattern,
    dedupe,
    default_dependency_rules,
    find_dependency_cycle,
    glob_escape,
    glob_to_regex,
    order_key_patterns,
    post_key_patterns,
    product_key_patterns,
    tags_for_trigger,
    user_key_patterns,
)


class TestPatterns:
    """Test pattern coercion and glob translation."""

    def test_coerce_pattern_variants(self):
        regex = re.compile("^user")

        assert coerce_pattern("user:*") == WildcardPattern("user:*")
        assert coerce_pattern(regex) == RegexPattern(regex)
        assert isinstance(coerce_pattern(lambda key, value: True), PredicatePattern)

    def test_exact_wildcard(self):
        assert WildcardPattern("user:1").is_exact
        assert not WildcardPattern("user:?").is_exact

    def test_glob_to_regex_is_anchored(self):
        regex = glob_to_regex("cache:user:1:*")

        assert regex.match("cache:user:1:profile")
        assert not regex.match("cache:user:10:profile")
        assert not regex.match("other:cache:user:1:profile")

    def test_glob_escapes_regex_characters(self):
        regex = glob_to_regex("price:(1.5)?")

        assert regex.match("price:(1.5)x")
        assert not regex.match("price:(105)x")

    def test_glob_escape_literal_text(self):
        assert glob_escape("ns*:a?") == "ns\\*:a\\?"
        assert glob_escape("post:[draft]") == "post:\\[draft\\]"
        assert glob_escape("a\\b") == "a\\\\b"

    def test_glob_escape_keeps_wildcards(self):
        assert glob_escape("post:[draft]:*", wildcards=True) == "post:\\[draft\\]:*"
        assert glob_escape("user:?", wildcards=True) == "user:?"


class TestDependencyRules:
    """Test the tag dependency table."""

    def test_default_table(self):
        rules = default_dependency_rules()

        assert set(rules) == {"user", "post", "product", "order"}
        assert rules["user"].cascading
        assert not rules["order"].cascading
        assert "inventory:update" in rules["product"].triggers

    def test_tags_for_trigger(self):
        rules = default_dependency_rules()

        assert tags_for_trigger(rules, "post:create") == ["post"]
        assert tags_for_trigger(rules, "comment:create") == []

    def test_find_cycle(self):
        rules = {
            "a": DependencyRule(dependencies=["b"], cascading=True),
            "b": DependencyRule(dependencies=["c"], cascading=True),
            "c": DependencyRule(dependencies=["a"], cascading=True),
        }

        assert find_dependency_cycle(rules) == ["a", "b", "c", "a"]

    def test_acyclic_default_table(self):
        assert find_dependency_cycle(default_dependency_rules()) is None

    def test_data_change_event_trigger(self):
        event = DataChangeEvent("user", "update", {"id": 1})

        assert event.trigger == "user:update"


class TestEntityKeyPatterns:
    """Test the patterns built from data-change payloads."""

    def test_user_update(self):
        assert user_key_patterns({"id": 7}, "update") == [
            "user:7:*",
            "user:profile:7",
            "user:preferences:7",
            "user:permissions:7",
        ]

    def test_user_delete_adds_list(self):
        assert "user:list:*" in user_key_patterns({"id": 7}, "delete")

    def test_post_patterns(self):
        patterns = post_key_patterns({"id": 3, "category": "news", "author_id": 9}, "update")

        assert patterns == ["post:3:*", "post:list:*", "post:category:news:*", "post:author:9:*"]

    def test_missing_fields_skipped(self):
        assert post_key_patterns({}, "create") == ["post:list:*"]
        assert product_key_patterns({"id": 1}, "update") == ["product:1:*", "product:list:*", "product:search:*"]

    def test_order_patterns(self):
        assert order_key_patterns({"id": 5, "user_id": 2}, "create") == [
            "order:5:*",
            "order:user:2:*",
            "analytics:sales:*",
        ]

    @pytest.mark.parametrize("patterns,expected", [
        (["a", "b", "a"], ["a", "b"]),
        ([], []),
    ])
    def test_dedupe(self, patterns, expected):
        assert dedupe(patterns) == expected
