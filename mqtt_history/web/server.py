"""FastAPI JSON API over the MQTT message history."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse, Response

from mqtt_history.codec import format_export_csv, format_export_json
from mqtt_history.config import load_settings
from mqtt_history.db import (
    DBBusyError,
    MessageHistoryDB,
    MessageNotFoundError,
    SchemaMismatchError,
    SearchCancelledError,
    SearchUnavailableError,
    StoreError,
)
from mqtt_history.ingest import IngestionCoordinator
from mqtt_history.models import InvalidFilterError, MessageFilter, MessageRecord
from mqtt_history.retention import RetentionPolicy, apply_retention
from mqtt_history.tool_schemas import MessageInfo, RetentionRequest, StatisticsInfo

logger = logging.getLogger(__name__)

app = FastAPI(title="MQTT History", docs_url=None, redoc_url=None)

# Global coordinator (initialized on startup)
_coordinator: IngestionCoordinator | None = None

MAX_PAGE_SIZE = 1000


def get_coordinator() -> IngestionCoordinator:
    """Get the coordinator instance."""
    if _coordinator is None:
        raise RuntimeError("Coordinator not initialized")
    return _coordinator


def init_app(
    db_path: str | None = None, *, coordinator: IngestionCoordinator | None = None
) -> IngestionCoordinator:
    """Initialize the coordinator backing the API."""
    global _coordinator
    if coordinator is None:
        settings = load_settings().with_overrides(db_path=db_path)
        coordinator = IngestionCoordinator(
            db=MessageHistoryDB(path=settings.db_path), settings=settings
        )
    _coordinator = coordinator
    return coordinator


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, InvalidFilterError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, SearchCancelledError):
        return HTTPException(status_code=503, detail="Search timed out")
    if isinstance(e, SearchUnavailableError | DBBusyError):
        return HTTPException(status_code=503, detail=str(e))
    logger.error("Request failed: %s", e)
    return HTTPException(status_code=500, detail=str(e))


_FAILURES = (
    InvalidFilterError,
    SearchCancelledError,
    SearchUnavailableError,
    DBBusyError,
    SchemaMismatchError,
    StoreError,
)


def _filter(
    *,
    topic: str | None,
    q: str | None,
    start_time: int | None,
    end_time: int | None,
    qos: int | None,
    retained: bool | None,
    connection_id: str | None,
    limit: int | None = None,
    offset: int | None = None,
) -> MessageFilter:
    return MessageFilter(
        topic=topic or None,
        payload_search=q or None,
        start_time=start_time,
        end_time=end_time,
        qos=qos,
        retained=retained,
        connection_id=connection_id,
        limit=limit,
        offset=offset,
    )


def _search(flt: MessageFilter) -> list[MessageRecord]:
    try:
        return get_coordinator().search(flt)
    except _FAILURES as e:
        raise _http_error(e) from e


@app.get("/messages")
def list_messages(
    topic: str | None = None,
    q: str | None = None,
    start_time: int | None = None,
    end_time: int | None = None,
    qos: int | None = None,
    retained: bool | None = None,
    connection_id: str | None = None,
    limit: int | None = Query(default=None, ge=0, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    """Search stored messages, newest first."""
    coordinator = get_coordinator()
    flt = _filter(
        topic=topic,
        q=q,
        start_time=start_time,
        end_time=end_time,
        qos=qos,
        retained=retained,
        connection_id=connection_id,
        limit=coordinator.settings.page_size if limit is None else limit,
        offset=offset,
    )
    records = _search(flt)
    return {
        "messages": [MessageInfo.from_record(r).model_dump() for r in records],
        "count": len(records),
        "limit": flt.limit,
        "offset": offset,
    }


@app.get("/messages/{message_id}")
def get_message(message_id: str) -> MessageInfo:
    try:
        record = get_coordinator().db.get_message(message_id=message_id)
    except MessageNotFoundError:
        raise HTTPException(status_code=404, detail="Message not found") from None
    return MessageInfo.from_record(record)


@app.delete("/messages")
def delete_messages(
    topic: str | None = None,
    q: str | None = None,
    start_time: int | None = None,
    end_time: int | None = None,
    qos: int | None = None,
    retained: bool | None = None,
    connection_id: str | None = None,
) -> dict[str, Any]:
    """Delete matching messages; with no filter, clear history and the topic tree."""
    flt = _filter(
        topic=topic,
        q=q,
        start_time=start_time,
        end_time=end_time,
        qos=qos,
        retained=retained,
        connection_id=connection_id,
    )
    coordinator = get_coordinator()
    try:
        if flt == MessageFilter():
            deleted = coordinator.clear()
        else:
            deleted = coordinator.db.delete_matching(flt)
    except _FAILURES as e:
        raise _http_error(e) from e
    return {"status": "ok", "deleted_count": deleted}


@app.delete("/messages/{message_id}")
def delete_message(message_id: str) -> dict[str, Any]:
    deleted = get_coordinator().db.delete_message(message_id=message_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Message not found")
    return {"status": "ok", "message_id": message_id, "deleted": True}


@app.get("/stats")
def stats() -> StatisticsInfo:
    try:
        s = get_coordinator().statistics()
    except _FAILURES as e:
        raise _http_error(e) from e
    return StatisticsInfo.from_statistics(s)


@app.get("/tree")
def topic_tree(rebuild: bool = True) -> dict[str, Any]:
    """Topic hierarchy; rebuilt from stored history unless ``rebuild=false``."""
    coordinator = get_coordinator()
    if rebuild:
        try:
            coordinator.rebuild_tree()
        except _FAILURES as e:
            raise _http_error(e) from e
    return {
        "tree": coordinator.tree_snapshot(),
        "topic_count": coordinator.tree.topic_count(),
        "message_count": coordinator.tree.total_message_count(),
    }


@app.get("/tree/matching")
def tree_matching(pattern: str) -> dict[str, Any]:
    coordinator = get_coordinator()
    try:
        if coordinator.tree.is_empty:
            coordinator.rebuild_tree()
        topics = coordinator.matching_topics(pattern)
    except _FAILURES as e:
        raise _http_error(e) from e
    return {"pattern": pattern, "topics": topics}


@app.get("/export.json")
def export_json(
    topic: str | None = None,
    q: str | None = None,
    start_time: int | None = None,
    end_time: int | None = None,
    qos: int | None = None,
    retained: bool | None = None,
    connection_id: str | None = None,
) -> Response:
    records = _search(
        _filter(
            topic=topic,
            q=q,
            start_time=start_time,
            end_time=end_time,
            qos=qos,
            retained=retained,
            connection_id=connection_id,
        )
    )
    return Response(
        content=format_export_json(records),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="mqtt-history.json"'},
    )


@app.get("/export.csv", response_class=PlainTextResponse)
def export_csv(
    topic: str | None = None,
    q: str | None = None,
    start_time: int | None = None,
    end_time: int | None = None,
    qos: int | None = None,
    retained: bool | None = None,
    connection_id: str | None = None,
) -> Any:
    records = _search(
        _filter(
            topic=topic,
            q=q,
            start_time=start_time,
            end_time=end_time,
            qos=qos,
            retained=retained,
            connection_id=connection_id,
        )
    )
    return PlainTextResponse(
        content=format_export_csv(records),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="mqtt-history.csv"'},
    )


@app.post("/retention")
def retention(request: RetentionRequest) -> dict[str, Any]:
    """Apply retention once, with request limits overriding configured ones."""
    coordinator = get_coordinator()
    settings = coordinator.settings.with_overrides(
        retention_max_age_days=request.max_age_days,
        retention_max_messages=request.max_messages,
    )
    try:
        policy = RetentionPolicy.from_settings(settings)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    if not policy.enabled:
        raise HTTPException(status_code=400, detail="No retention limit set")
    try:
        result = apply_retention(coordinator.db, policy)
    except _FAILURES as e:
        raise _http_error(e) from e
    return {
        "status": "ok",
        "deleted": result.deleted,
        "deleted_by_age": result.deleted_by_age,
        "deleted_by_count": result.deleted_by_count,
    }


def run_server(host: str = "127.0.0.1", port: int = 8080, db_path: str | None = None) -> None:
    """Run the web server."""
    import uvicorn

    init_app(db_path)
    uvicorn.run(app, host=host, port=port)
