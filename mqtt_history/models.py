from __future__ import annotations

import re
from dataclasses import dataclass, field

UserProperties = dict[str, str | list[str]]

VALID_QOS = (0, 1, 2)

_WORD_RE = re.compile(r"\w+", re.UNICODE)


class InvalidRecordError(ValueError):
    pass


class InvalidFilterError(ValueError):
    pass


def payload_words(text: str | None) -> list[str]:
    """Searchable words of a payload query."""
    return _WORD_RE.findall(text or "")


@dataclass(frozen=True, slots=True)
class MessageRecord:
    message_id: str
    topic: str
    payload: bytes
    qos: int
    retained: bool
    timestamp: int
    connection_id: str | None = None
    user_properties: UserProperties | None = None


@dataclass(frozen=True, slots=True)
class MessageFilter:
    """Query descriptor for ``MessageHistoryDB.search``.

    Every field is optional and all set fields are AND-combined. ``limit=None``
    means no limit; ``limit=0`` always yields an empty result.
    """

    topic: str | None = None
    payload_search: str | None = None
    start_time: int | None = None
    end_time: int | None = None
    qos: int | None = None
    retained: bool | None = None
    connection_id: str | None = None
    limit: int | None = None
    offset: int | None = None
    user_property_key: str | None = None
    user_property_value: str | None = None

    def validate(self) -> None:
        if self.topic is not None:
            if not self.topic:
                raise InvalidFilterError("topic filter must be a non-empty string")
            from mqtt_history.topics import compile_pattern

            compile_pattern(self.topic)
        if self.payload_search and not payload_words(self.payload_search):
            raise InvalidFilterError("payload_search must contain at least one word")
        if (
            self.start_time is not None
            and self.end_time is not None
            and self.start_time > self.end_time
        ):
            raise InvalidFilterError("start_time must be <= end_time")
        if self.qos is not None and self.qos not in VALID_QOS:
            raise InvalidFilterError("qos must be one of 0, 1, 2")
        if self.limit is not None and self.limit < 0:
            raise InvalidFilterError("limit must be >= 0")
        if self.offset is not None and self.offset < 0:
            raise InvalidFilterError("offset must be >= 0")
        if self.user_property_value is not None and not self.user_property_key:
            raise InvalidFilterError("user_property_value requires user_property_key")


@dataclass(frozen=True, slots=True)
class Statistics:
    total_messages: int
    messages_by_topic: dict[str, int] = field(default_factory=dict)
    messages_per_second: float = 0.0
    data_volume: int = 0
    topic_count: int = 0
