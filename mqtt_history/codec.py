from __future__ import annotations

import base64
import csv
import io
import json
import uuid
from collections.abc import Iterable, Mapping
from typing import Any

from mqtt_history.common import iso_datetime, now_ms
from mqtt_history.models import VALID_QOS, InvalidRecordError, MessageRecord, UserProperties
from mqtt_history.topics import validate_topic

CSV_HEADERS = ["ID", "Topic", "Payload", "QoS", "Retained", "Timestamp", "DateTime"]


def new_message_id(timestamp_ms: int) -> str:
    return f"{timestamp_ms}-{uuid.uuid4().hex[:9]}"


def coerce_payload(payload: bytes | bytearray | memoryview | str | None) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    raise InvalidRecordError(f"payload must be bytes or str, not {type(payload).__name__}")


def _validate_user_properties(props: object) -> UserProperties | None:
    if props is None:
        return None
    if not isinstance(props, Mapping):
        raise InvalidRecordError("user_properties must be a mapping")
    out: UserProperties = {}
    for key, value in props.items():
        if not isinstance(key, str):
            raise InvalidRecordError("user property keys must be strings")
        if isinstance(value, str):
            out[key] = value
        elif isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
            out[key] = list(value)
        else:
            raise InvalidRecordError(f"user property {key!r} must be a string or list of strings")
    return out


def validate_record(record: MessageRecord) -> MessageRecord:
    if not isinstance(record.message_id, str) or not record.message_id:
        raise InvalidRecordError("message_id must be a non-empty string")
    validate_topic(record.topic)
    if not isinstance(record.payload, bytes):
        raise InvalidRecordError("payload must be bytes")
    if isinstance(record.qos, bool) or record.qos not in VALID_QOS:
        raise InvalidRecordError("qos must be one of 0, 1, 2")
    if not isinstance(record.retained, bool):
        raise InvalidRecordError("retained must be a bool")
    if isinstance(record.timestamp, bool) or not isinstance(record.timestamp, int):
        raise InvalidRecordError("timestamp must be an int (epoch milliseconds)")
    if record.timestamp < 0:
        raise InvalidRecordError("timestamp must be >= 0")
    if record.connection_id is not None and not isinstance(record.connection_id, str):
        raise InvalidRecordError("connection_id must be a string or None")
    return record


def make_record(
    *,
    topic: str,
    payload: bytes | bytearray | memoryview | str | None,
    qos: int = 0,
    retained: bool = False,
    timestamp: int | None = None,
    connection_id: str | None = None,
    user_properties: Mapping[str, Any] | None = None,
    message_id: str | None = None,
) -> MessageRecord:
    """Build a validated record, stamping id and timestamp when not given."""
    ts = now_ms() if timestamp is None else timestamp
    record = MessageRecord(
        message_id=message_id or new_message_id(ts),
        topic=topic,
        payload=coerce_payload(payload),
        qos=qos,
        retained=bool(retained),
        timestamp=ts,
        connection_id=connection_id or None,
        user_properties=_validate_user_properties(user_properties),
    )
    return validate_record(record)


def payload_text(payload: bytes) -> str | None:
    """Text used for the full-text index, or None when the payload is binary."""
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if "\0" in text:
        return None
    return text


def display_payload(payload: bytes) -> str:
    """Display-safe rendering of a payload; never returns raw binary."""
    text = payload_text(payload)
    if text is not None:
        return text
    return "base64:" + base64.b64encode(payload).decode("ascii")


def record_to_dict(record: MessageRecord) -> dict[str, Any]:
    """Wire form: payload rendered display-safe, plus a base64 copy for lossless transport."""
    return {
        "message_id": record.message_id,
        "topic": record.topic,
        "payload": display_payload(record.payload),
        "payload_base64": base64.b64encode(record.payload).decode("ascii"),
        "qos": record.qos,
        "retained": record.retained,
        "timestamp": record.timestamp,
        "datetime": iso_datetime(record.timestamp),
        "connection_id": record.connection_id,
        "user_properties": record.user_properties,
    }


def record_from_dict(data: Mapping[str, Any]) -> MessageRecord:
    """Parse the wire form (or a JSON export row) back into a record.

    ``payload_base64`` wins over ``payload`` when both are present. A missing id
    or timestamp is generated as for a freshly received message.
    """
    if not isinstance(data, Mapping):
        raise InvalidRecordError("record must be an object")
    raw_b64 = data.get("payload_base64")
    if raw_b64 is not None:
        try:
            payload: bytes | str | None = base64.b64decode(raw_b64, validate=True)
        except ValueError as e:
            raise InvalidRecordError("payload_base64 is not valid base64") from e
    else:
        payload = data.get("payload")
    return make_record(
        topic=data.get("topic"),  # type: ignore[arg-type]
        payload=payload,
        qos=data.get("qos", 0),
        retained=bool(data.get("retained", False)),
        timestamp=data.get("timestamp"),
        connection_id=data.get("connection_id"),
        user_properties=data.get("user_properties"),
        message_id=data.get("message_id") or data.get("id"),
    )


def _export_payload(payload: bytes) -> str:
    return payload.decode("utf-8", errors="replace")


def export_row(record: MessageRecord) -> dict[str, Any]:
    return {
        "id": record.message_id,
        "topic": record.topic,
        "payload": _export_payload(record.payload),
        "qos": record.qos,
        "retained": record.retained,
        "timestamp": record.timestamp,
        "datetime": iso_datetime(record.timestamp),
        "connection_id": record.connection_id,
    }


def format_export_json(records: Iterable[MessageRecord]) -> str:
    return json.dumps([export_row(r) for r in records], ensure_ascii=False, indent=2)


def format_export_csv(records: Iterable[MessageRecord]) -> str:
    buf = io.StringIO()
    buf.write(",".join(CSV_HEADERS) + "\n")
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for r in records:
        writer.writerow(
            [
                r.message_id,
                r.topic,
                _export_payload(r.payload),
                r.qos,
                "true" if r.retained else "false",
                r.timestamp,
                iso_datetime(r.timestamp),
            ]
        )
    return buf.getvalue().rstrip("\n")
