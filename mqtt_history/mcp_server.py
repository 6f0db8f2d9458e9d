from __future__ import annotations

from typing import Annotated, Any

from mcp.server.fastmcp import FastMCP
from mcp.types import CallToolResult

from mqtt_history.codec import format_export_csv, format_export_json, record_to_dict
from mqtt_history.common import ErrorCode, tool_error, tool_ok
from mqtt_history.config import load_settings
from mqtt_history.db import (
    DBBusyError,
    MessageHistoryDB,
    SchemaMismatchError,
    SearchCancelledError,
    SearchUnavailableError,
    StoreError,
)
from mqtt_history.ingest import IngestionCoordinator
from mqtt_history.models import InvalidFilterError, MessageFilter
from mqtt_history.retention import RetentionPolicy, apply_retention
from mqtt_history.tool_schemas import (
    ExportFormat,
    MessagesExportOutput,
    MessagesPruneOutput,
    MessagesSearchOutput,
    MessagesStatsOutput,
    PingOutput,
    TopicsMatchingOutput,
    TopicTreeOutput,
)


VERSION = "0.1.0"
MAX_SEARCH_LIMIT = 500

mcp = FastMCP(
    name="mqtt-history",
    instructions=(
        "Query a recorded history of MQTT messages. Use messages_search with an MQTT topic "
        "filter (wildcards + and # are supported) and/or a full-text query. Use topic_tree or "
        "topics_matching to discover topics before searching. Payloads that are not UTF-8 text "
        "are returned as 'base64:...'; payload_base64 always holds the raw bytes."
    ),
)

_coordinator: IngestionCoordinator | None = None


def init_coordinator(coordinator: IngestionCoordinator | None = None) -> IngestionCoordinator:
    """Set the coordinator the tools use; builds one from the environment when omitted."""
    global _coordinator
    if coordinator is None:
        settings = load_settings()
        coordinator = IngestionCoordinator(
            db=MessageHistoryDB(path=settings.db_path), settings=settings
        )
    _coordinator = coordinator
    return coordinator


def get_coordinator() -> IngestionCoordinator:
    if _coordinator is None:
        return init_coordinator()
    return _coordinator


def _failure_result(e: Exception) -> CallToolResult:
    if isinstance(e, InvalidFilterError):
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=str(e))
    if isinstance(e, SearchUnavailableError):
        return tool_error(code=ErrorCode.SEARCH_UNAVAILABLE, message=str(e))
    if isinstance(e, SearchCancelledError):
        return tool_error(code=ErrorCode.SEARCH_CANCELLED, message="Search timed out.")
    if isinstance(e, SchemaMismatchError):
        return tool_error(code=ErrorCode.DB_SCHEMA_MISMATCH, message=str(e))
    if isinstance(e, DBBusyError):
        return tool_error(code=ErrorCode.DB_BUSY, message="Database is busy.")
    return tool_error(code=ErrorCode.STORE_ERROR, message=str(e))


_FAILURES = (
    InvalidFilterError,
    SearchUnavailableError,
    SearchCancelledError,
    SchemaMismatchError,
    DBBusyError,
    StoreError,
)


@mcp.tool(description="Health check for the MQTT history MCP server.")
def ping() -> Annotated[CallToolResult, PingOutput]:
    """Health check for the MQTT history MCP server."""
    return tool_ok(text="pong", structured={"ok": True, "version": VERSION})


@mcp.tool(
    description=(
        "Search stored MQTT messages, newest first. topic accepts MQTT wildcards; a topic "
        "without wildcards also matches its subtopics. query is a full-text payload search. "
        "start_time/end_time are epoch milliseconds."
    )
)
def messages_search(
    topic: str | None = None,
    query: str | None = None,
    start_time: int | None = None,
    end_time: int | None = None,
    qos: int | None = None,
    retained: bool | None = None,
    connection_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> Annotated[CallToolResult, MessagesSearchOutput]:
    """Search stored messages."""
    if limit < 0 or limit > MAX_SEARCH_LIMIT:
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT,
            message=f"limit must be between 0 and {MAX_SEARCH_LIMIT}",
        )
    flt = MessageFilter(
        topic=topic or None,
        payload_search=query or None,
        start_time=start_time,
        end_time=end_time,
        qos=qos,
        retained=retained,
        connection_id=connection_id,
        limit=limit,
        offset=offset,
    )
    try:
        records = get_coordinator().search(flt)
    except _FAILURES as e:
        return _failure_result(e)

    lines = [f"{len(records)} message(s)"]
    for r in records:
        lines.append(f"- {r.topic} qos={r.qos} ts={r.timestamp} id={r.message_id}")
    return tool_ok(
        text="\n".join(lines),
        structured={
            "topic": topic,
            "query": query,
            "messages": [record_to_dict(r) for r in records],
            "count": len(records),
        },
    )


@mcp.tool(description="Message statistics: totals, rate over the last minute, busiest topics.")
def messages_stats() -> Annotated[CallToolResult, MessagesStatsOutput]:
    """Message statistics."""
    try:
        s = get_coordinator().statistics()
    except _FAILURES as e:
        return _failure_result(e)
    text = (
        f"{s.total_messages} message(s) on {s.topic_count} topic(s), "
        f"{s.data_volume} bytes, {s.messages_per_second:.2f} msg/s"
    )
    return tool_ok(
        text=text,
        structured={
            "stats": {
                "total_messages": s.total_messages,
                "topic_count": s.topic_count,
                "data_volume": s.data_volume,
                "messages_per_second": s.messages_per_second,
                "messages_by_topic": s.messages_by_topic,
            }
        },
    )


def _tree_lines(nodes: list[dict[str, Any]], depth: int = 0) -> list[str]:
    out: list[str] = []
    for node in nodes:
        out.append(f"{'  ' * depth}{node['name']} ({node['message_count']})")
        out.extend(_tree_lines(node["children"], depth + 1))
    return out


@mcp.tool(description="Topic hierarchy rebuilt from stored history, with per-topic counts.")
def topic_tree() -> Annotated[CallToolResult, TopicTreeOutput]:
    """Topic hierarchy with per-topic message counts."""
    coordinator = get_coordinator()
    try:
        coordinator.rebuild_tree()
    except _FAILURES as e:
        return _failure_result(e)
    snapshot = coordinator.tree_snapshot()
    return tool_ok(
        text="\n".join(_tree_lines(snapshot)) or "No topics.",
        structured={
            "tree": snapshot,
            "topic_count": coordinator.tree.topic_count(),
            "message_count": coordinator.tree.total_message_count(),
        },
    )


@mcp.tool(description="List known topics matching an MQTT topic filter (e.g. sensors/+/temp).")
def topics_matching(pattern: str) -> Annotated[CallToolResult, TopicsMatchingOutput]:
    """Known topics matching an MQTT filter."""
    coordinator = get_coordinator()
    try:
        if coordinator.tree.is_empty:
            coordinator.rebuild_tree()
        topics = coordinator.matching_topics(pattern)
    except _FAILURES as e:
        return _failure_result(e)
    return tool_ok(
        text="\n".join(topics) or "No matching topics.",
        structured={"pattern": pattern, "topics": topics},
    )


@mcp.tool(
    description=(
        "Export stored messages as JSON or CSV text. Accepts the same filters as "
        "messages_search, without paging."
    )
)
def messages_export(
    format: ExportFormat = "json",
    topic: str | None = None,
    query: str | None = None,
    start_time: int | None = None,
    end_time: int | None = None,
    qos: int | None = None,
    retained: bool | None = None,
    connection_id: str | None = None,
) -> Annotated[CallToolResult, MessagesExportOutput]:
    """Export stored messages as JSON or CSV text."""
    flt = MessageFilter(
        topic=topic or None,
        payload_search=query or None,
        start_time=start_time,
        end_time=end_time,
        qos=qos,
        retained=retained,
        connection_id=connection_id,
    )
    try:
        records = get_coordinator().search(flt)
    except _FAILURES as e:
        return _failure_result(e)
    content = format_export_csv(records) if format == "csv" else format_export_json(records)
    return tool_ok(
        text=content,
        structured={"format": format, "content": content, "count": len(records)},
    )


@mcp.tool(
    description=(
        "Delete old messages: those older than max_age_days and/or all but the newest "
        "max_messages. 0 disables a limit."
    )
)
def messages_prune(
    max_age_days: int = 0, max_messages: int = 0
) -> Annotated[CallToolResult, MessagesPruneOutput]:
    """Apply a one-off retention policy."""
    try:
        policy = RetentionPolicy(max_age_days=max_age_days, max_messages=max_messages)
    except ValueError as e:
        return tool_error(code=ErrorCode.INVALID_ARGUMENT, message=str(e))
    if not policy.enabled:
        return tool_error(
            code=ErrorCode.INVALID_ARGUMENT,
            message="Set max_age_days and/or max_messages.",
        )
    try:
        result = apply_retention(get_coordinator().db, policy)
    except _FAILURES as e:
        return _failure_result(e)
    return tool_ok(
        text=f"Deleted {result.deleted} message(s).",
        structured={
            "deleted": result.deleted,
            "deleted_by_age": result.deleted_by_age,
            "deleted_by_count": result.deleted_by_count,
        },
    )


def main() -> None:
    init_coordinator()
    mcp.run(transport="stdio")
