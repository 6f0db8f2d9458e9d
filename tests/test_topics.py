from __future__ import annotations

import pytest

from mqtt_history.models import InvalidRecordError
from mqtt_history.topics import (
    InvalidPatternError,
    TopicPattern,
    compile_pattern,
    topic_matches,
    validate_topic,
)


@pytest.mark.parametrize(
    ("topic", "expected"),
    [("a", True), ("a/b", True), ("a/b/c", True), ("ab", False), ("b/a", False)],
)
def test_multi_level_wildcard_includes_parent(topic: str, expected: bool) -> None:
    assert topic_matches("a/#", topic) is expected


def test_single_level_wildcard_matches_exactly_one_level() -> None:
    p = compile_pattern("sensors/+/temp")
    assert p("sensors/kitchen/temp")
    assert p("sensors/garage/temp")
    assert not p("sensors/temp")
    assert not p("sensors/a/b/temp")
    assert not p("sensors//temp")


def test_bare_hash_matches_everything_but_system_topics() -> None:
    p = compile_pattern("#")
    assert p("a")
    assert p("a/b/c")
    assert not p("$SYS/broker/uptime")
    assert compile_pattern("$SYS/#")("$SYS/broker/uptime")
    assert not compile_pattern("+/broker")("$SYS/broker")


def test_literal_pattern_prefix_semantics_are_optional() -> None:
    assert topic_matches("sensors/kitchen", "sensors/kitchen/temp")
    assert topic_matches("sensors/kitchen", "sensors/kitchen")
    assert not topic_matches("sensors/kitchen", "sensors/kitchenette")
    assert not topic_matches("sensors/kitchen", "sensors/kitchen/temp", literal_prefix=False)


@pytest.mark.parametrize("pattern", ["", "a/#/b", "a#", "a/b+", "+a/b", "#/a"])
def test_invalid_patterns_rejected(pattern: str) -> None:
    with pytest.raises(InvalidPatternError):
        TopicPattern(pattern)


def test_sql_predicate_for_literal_and_wildcards() -> None:
    clause, params = compile_pattern("a/b").sql_predicate("topic")
    assert clause == "(topic = ? OR topic GLOB ?)"
    assert params == ["a/b", "a/b/*"]

    p = compile_pattern("a/+/c")
    assert not p.sql_exact
    clause, params = p.sql_predicate("topic")
    assert clause == "topic GLOB ?"
    assert params == ["a/*"]

    assert compile_pattern("a/b/#").sql_exact
    assert compile_pattern("+/x").sql_predicate() == (None, [])


def test_sql_predicate_escapes_glob_metacharacters() -> None:
    _, params = compile_pattern("we*ird?[x]").sql_predicate()
    assert params[1] == "we[*]ird[?][[]x]/*"


@pytest.mark.parametrize("topic", ["", "a/+", "a/#", "a\0b", None])
def test_validate_topic_rejects_bad_topics(topic: object) -> None:
    with pytest.raises(InvalidRecordError):
        validate_topic(topic)
