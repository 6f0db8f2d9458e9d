from __future__ import annotations

import json
import os
import time
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from mcp.types import CallToolResult, TextContent


class ErrorCode(StrEnum):
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    MESSAGE_NOT_FOUND = "MESSAGE_NOT_FOUND"
    SEARCH_UNAVAILABLE = "SEARCH_UNAVAILABLE"
    SEARCH_CANCELLED = "SEARCH_CANCELLED"
    STORE_ERROR = "STORE_ERROR"
    DB_BUSY = "DB_BUSY"
    DB_SCHEMA_MISMATCH = "DB_SCHEMA_MISMATCH"


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def iso_datetime(timestamp_ms: int) -> str:
    """Render epoch milliseconds as ISO-8601 UTC, e.g. ``2024-01-02T03:04:05.678Z``."""
    dt = datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def env_int(name: str, *, default: int, min_value: int | None = None) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as e:  # pragma: no cover
            raise ValueError(f"{name} must be an int") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}")
    return value


def env_float(name: str, *, default: float, min_value: float | None = None) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        value = default
    else:
        try:
            value = float(raw)
        except ValueError as e:  # pragma: no cover
            raise ValueError(f"{name} must be a number") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value}")
    return value


def env_str(name: str, *, default: str) -> str:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


def json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=True, separators=(",", ":"), sort_keys=True)


def json_loads(data: str) -> Any:
    return json.loads(data)


def tool_ok(*, text: str, structured: dict[str, Any] | None = None) -> CallToolResult:
    payload: dict[str, Any] = {} if structured is None else dict(structured)
    return CallToolResult(
        content=[TextContent(type="text", text=text)],
        structuredContent=payload,
    )


def tool_error(
    *,
    code: ErrorCode,
    message: str,
    structured: dict[str, Any] | None = None,
) -> CallToolResult:
    payload: dict[str, Any] = {"error": {"code": str(code), "message": message}}
    if structured:
        payload.update(structured)
    return CallToolResult(
        content=[TextContent(type="text", text=message)],
        structuredContent=payload,
        isError=True,
    )
