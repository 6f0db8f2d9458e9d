"""MQTT topic pattern matching.

One compiled form serves both the in-memory topic tree and storage queries, so
live filtering and history search always agree on what a pattern means:

- ``+`` matches exactly one non-empty level and never crosses a ``/``.
- ``#`` is only legal as the last level and matches zero or more trailing
  levels, so ``a/#`` matches ``a`` itself.
- Topics starting with ``$`` are never matched by a wildcard in the first level.
- With ``literal_prefix=True`` a pattern without wildcards also matches every
  topic it is a ``/``-delimited ancestor of (``sensors`` matches
  ``sensors/kitchen``). Wildcard patterns always follow plain MQTT rules.
"""

from __future__ import annotations

from functools import lru_cache

from mqtt_history.models import InvalidFilterError, InvalidRecordError

SEPARATOR = "/"
SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"


class InvalidPatternError(InvalidFilterError):
    pass


def split_topic(topic: str) -> list[str]:
    return topic.split(SEPARATOR)


def is_wildcard(pattern: str) -> bool:
    return SINGLE_LEVEL in pattern or MULTI_LEVEL in pattern


def validate_topic(topic: object) -> str:
    """Check a concrete (publish) topic name."""
    if not isinstance(topic, str) or not topic:
        raise InvalidRecordError("topic must be a non-empty string")
    if is_wildcard(topic):
        raise InvalidRecordError(f"topic must not contain wildcards: {topic!r}")
    if "\0" in topic:
        raise InvalidRecordError("topic must not contain NUL characters")
    return topic


def _glob_escape(text: str) -> str:
    return "".join(f"[{c}]" if c in "*?[" else c for c in text)


class TopicPattern:
    __slots__ = ("pattern", "levels", "literal_prefix", "has_wildcards")

    def __init__(self, pattern: str, *, literal_prefix: bool = True) -> None:
        if not isinstance(pattern, str) or not pattern:
            raise InvalidPatternError("topic pattern must be a non-empty string")
        levels = split_topic(pattern)
        last = len(levels) - 1
        for i, level in enumerate(levels):
            if MULTI_LEVEL in level and (level != MULTI_LEVEL or i != last):
                raise InvalidPatternError(
                    f"'#' must occupy the whole last level of a pattern: {pattern!r}"
                )
            if SINGLE_LEVEL in level and level != SINGLE_LEVEL:
                raise InvalidPatternError(f"'+' must occupy a whole level: {pattern!r}")
        self.pattern = pattern
        self.levels = levels
        self.literal_prefix = literal_prefix
        self.has_wildcards = is_wildcard(pattern)

    def __repr__(self) -> str:
        return f"TopicPattern({self.pattern!r}, literal_prefix={self.literal_prefix})"

    def __call__(self, topic: str) -> bool:
        return self.matches(topic)

    def matches(self, topic: str) -> bool:
        if not self.has_wildcards:
            if topic == self.pattern:
                return True
            return self.literal_prefix and topic.startswith(self.pattern + SEPARATOR)

        if topic.startswith("$") and self.levels[0] in (SINGLE_LEVEL, MULTI_LEVEL):
            return False

        topic_levels = split_topic(topic)
        for i, level in enumerate(self.levels):
            if level == MULTI_LEVEL:
                return True
            if i >= len(topic_levels):
                return False
            if level == SINGLE_LEVEL:
                if not topic_levels[i]:
                    return False
                continue
            if level != topic_levels[i]:
                return False
        return len(topic_levels) == len(self.levels)

    def literal_levels(self) -> list[str]:
        """Levels before the first wildcard."""
        out: list[str] = []
        for level in self.levels:
            if level in (SINGLE_LEVEL, MULTI_LEVEL):
                break
            out.append(level)
        return out

    @property
    def sql_exact(self) -> bool:
        """Whether ``sql_predicate`` alone selects exactly the matching topics."""
        if not self.has_wildcards:
            return True
        # "a/b/#" is the same set as the literal prefix "a/b".
        return (
            self.levels[-1] == MULTI_LEVEL
            and SINGLE_LEVEL not in self.levels
            and len(self.levels) > 1
        )

    def sql_predicate(self, column: str = "topic") -> tuple[str | None, list[str]]:
        """Index-friendly SQL clause over ``column``.

        Uses GLOB rather than LIKE because topics are case-sensitive. When
        ``sql_exact`` is False the clause only narrows the candidates and the
        caller must still apply the full predicate.
        """
        if not self.has_wildcards:
            if not self.literal_prefix:
                return f"{column} = ?", [self.pattern]
            return (
                f"({column} = ? OR {column} GLOB ?)",
                [self.pattern, _glob_escape(self.pattern + SEPARATOR) + "*"],
            )

        prefix = self.literal_levels()
        if not prefix:
            return None, []
        joined = SEPARATOR.join(prefix)
        if self.sql_exact:
            return (
                f"({column} = ? OR {column} GLOB ?)",
                [joined, _glob_escape(joined + SEPARATOR) + "*"],
            )
        return f"{column} GLOB ?", [_glob_escape(joined + SEPARATOR) + "*"]


@lru_cache(maxsize=512)
def compile_pattern(pattern: str, *, literal_prefix: bool = True) -> TopicPattern:
    return TopicPattern(pattern, literal_prefix=literal_prefix)


def topic_matches(pattern: str, topic: str, *, literal_prefix: bool = True) -> bool:
    return compile_pattern(pattern, literal_prefix=literal_prefix)(topic)
