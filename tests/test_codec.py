from __future__ import annotations

import csv
import io
import json
import re

import pytest

from mqtt_history.codec import (
    CSV_HEADERS,
    display_payload,
    format_export_csv,
    format_export_json,
    make_record,
    payload_text,
    record_from_dict,
    record_to_dict,
)
from mqtt_history.models import InvalidRecordError


def test_make_record_stamps_id_and_timestamp() -> None:
    r = make_record(topic="a/b", payload="hi")
    assert r.payload == b"hi"
    assert r.qos == 0
    assert r.retained is False
    assert re.fullmatch(rf"{r.timestamp}-[0-9a-f]{{9}}", r.message_id)


def test_make_record_ids_are_unique() -> None:
    ids = {make_record(topic="a", payload=b"", timestamp=1).message_id for _ in range(200)}
    assert len(ids) == 200


@pytest.mark.parametrize(
    "kwargs",
    [
        {"topic": "", "payload": b""},
        {"topic": "a/+", "payload": b""},
        {"topic": "a", "payload": b"", "qos": 3},
        {"topic": "a", "payload": b"", "timestamp": -1},
        {"topic": "a", "payload": 5},
        {"topic": "a", "payload": b"", "user_properties": {"k": 1}},
    ],
)
def test_make_record_rejects_invalid_input(kwargs: dict) -> None:
    with pytest.raises(InvalidRecordError):
        make_record(**kwargs)


def test_binary_payload_is_displayed_as_base64() -> None:
    assert payload_text(b"\xff\xfe") is None
    assert payload_text(b"a\0b") is None
    assert display_payload(b"\xff") == "base64:/w=="
    assert display_payload("grüße".encode()) == "grüße"


def test_wire_dict_round_trip_keeps_binary_payload() -> None:
    r = make_record(
        topic="dev/1",
        payload=b"\x00\x01\xff",
        qos=1,
        retained=True,
        timestamp=1_700_000_000_123,
        connection_id="c1",
        user_properties={"unit": "C", "tag": ["a", "b"]},
    )
    d = record_to_dict(r)
    assert d["datetime"] == "2023-11-14T22:13:20.123Z"
    assert d["payload"].startswith("base64:")
    assert record_from_dict(d) == r


def test_record_from_dict_accepts_export_rows() -> None:
    r = record_from_dict({"id": "x-1", "topic": "a", "payload": "hello", "timestamp": 5})
    assert r.message_id == "x-1"
    assert r.payload == b"hello"


def test_export_json_shape() -> None:
    r = make_record(topic="a/b", payload="{\"t\": 21}", qos=2, timestamp=0, message_id="0-abc")
    rows = json.loads(format_export_json([r]))
    assert rows == [
        {
            "id": "0-abc",
            "topic": "a/b",
            "payload": '{"t": 21}',
            "qos": 2,
            "retained": False,
            "timestamp": 0,
            "datetime": "1970-01-01T00:00:00.000Z",
            "connection_id": None,
        }
    ]


def test_export_csv_quotes_rows_not_header() -> None:
    r = make_record(topic="a", payload='say "hi", ok', timestamp=0, message_id="0-abc")
    text = format_export_csv([r])
    lines = text.split("\n")
    assert lines[0] == ",".join(CSV_HEADERS)
    assert lines[1] == (
        '"0-abc","a","say ""hi"", ok","0","false","0","1970-01-01T00:00:00.000Z"'
    )
    parsed = list(csv.reader(io.StringIO(text)))
    assert parsed[1][2] == 'say "hi", ok'


def test_export_csv_empty_has_header_only() -> None:
    assert format_export_csv([]) == ",".join(CSV_HEADERS)
