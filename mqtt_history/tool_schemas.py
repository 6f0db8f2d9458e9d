from __future__ import annotations

from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, model_validator

from mqtt_history.codec import record_to_dict
from mqtt_history.models import MessageRecord, Statistics

ExportFormat = Literal["json", "csv"]


class ToolErrorInfo(BaseModel):
    code: str
    message: str


class ToolOutputBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    error: ToolErrorInfo | None = None

    required_on_success: ClassVar[tuple[str, ...]] = ()

    @model_validator(mode="after")
    def _validate_required_on_success(self) -> ToolOutputBase:
        if self.error is not None:
            return self
        for field in self.required_on_success:
            if getattr(self, field) is None:
                raise ValueError(f"Missing required field: {field}")
        return self


class MessageInfo(BaseModel):
    message_id: str
    topic: str
    payload: str
    payload_base64: str
    qos: int
    retained: bool
    timestamp: int
    datetime: str
    connection_id: str | None
    user_properties: dict[str, str | list[str]] | None

    @classmethod
    def from_record(cls, record: MessageRecord) -> MessageInfo:
        return cls(**record_to_dict(record))


class StatisticsInfo(BaseModel):
    total_messages: int
    topic_count: int
    data_volume: int
    messages_per_second: float
    messages_by_topic: dict[str, int]

    @classmethod
    def from_statistics(cls, stats: Statistics) -> StatisticsInfo:
        return cls(
            total_messages=stats.total_messages,
            topic_count=stats.topic_count,
            data_volume=stats.data_volume,
            messages_per_second=stats.messages_per_second,
            messages_by_topic=stats.messages_by_topic,
        )


class TopicNodeInfo(BaseModel):
    name: str
    full_path: str
    message_count: int
    subscribed: bool
    last_message: dict[str, Any] | None
    children: list[TopicNodeInfo]


class PingOutput(ToolOutputBase):
    required_on_success = ("ok", "version")

    ok: bool | None = None
    version: str | None = None


class MessagesSearchOutput(ToolOutputBase):
    required_on_success = ("messages", "count")

    topic: str | None = None
    query: str | None = None
    messages: list[MessageInfo] | None = None
    count: int | None = None


class MessagesStatsOutput(ToolOutputBase):
    required_on_success = ("stats",)

    stats: StatisticsInfo | None = None


class TopicTreeOutput(ToolOutputBase):
    required_on_success = ("tree", "topic_count", "message_count")

    tree: list[TopicNodeInfo] | None = None
    topic_count: int | None = None
    message_count: int | None = None


class TopicsMatchingOutput(ToolOutputBase):
    required_on_success = ("pattern", "topics")

    pattern: str | None = None
    topics: list[str] | None = None


class MessagesExportOutput(ToolOutputBase):
    required_on_success = ("format", "content", "count")

    format: ExportFormat | None = None
    content: str | None = None
    count: int | None = None


class MessagesPruneOutput(ToolOutputBase):
    required_on_success = ("deleted", "deleted_by_age", "deleted_by_count")

    deleted: int | None = None
    deleted_by_age: int | None = None
    deleted_by_count: int | None = None


class RetentionRequest(BaseModel):
    max_age_days: int | None = None
    max_messages: int | None = None
