from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from mqtt_history.codec import make_record
from mqtt_history.config import Settings
from mqtt_history.db import MessageHistoryDB
from mqtt_history.ingest import IngestionCoordinator
from mqtt_history.web import server


@pytest.fixture
def coordinator(tmp_path):
    c = IngestionCoordinator(
        db=MessageHistoryDB(path=str(tmp_path / "history.sqlite")),
        settings=Settings(page_size=2),
    )
    c.ingest(make_record(topic="sensors/kitchen/temp", payload="21.5", timestamp=100))
    c.ingest(make_record(topic="sensors/kitchen/humidity", payload="40", timestamp=200))
    c.ingest(make_record(topic="sensors/garage/temp", payload="12.0", timestamp=300))
    server.init_app(coordinator=c)
    yield c
    c.close()


@pytest.fixture
def client(coordinator):
    return TestClient(server.app)


def test_list_messages_uses_page_size(client):
    res = client.get("/messages")
    assert res.status_code == 200
    data = res.json()
    assert data["count"] == 2
    assert [m["timestamp"] for m in data["messages"]] == [300, 200]

    res = client.get("/messages", params={"topic": "sensors/kitchen", "limit": 10})
    assert [m["timestamp"] for m in res.json()["messages"]] == [200, 100]


def test_list_messages_bad_filter_is_400(client):
    assert client.get("/messages", params={"topic": "a/#/b"}).status_code == 400
    res = client.get("/messages", params={"start_time": 10, "end_time": 1})
    assert res.status_code == 400


def test_get_and_delete_message(client, coordinator):
    record = coordinator.search()[0]

    res = client.get(f"/messages/{record.message_id}")
    assert res.status_code == 200
    assert res.json()["topic"] == record.topic

    assert client.delete(f"/messages/{record.message_id}").status_code == 200
    assert client.get(f"/messages/{record.message_id}").status_code == 404
    assert client.delete(f"/messages/{record.message_id}").status_code == 404


def test_delete_messages_by_filter_then_clear(client, coordinator):
    res = client.delete("/messages", params={"topic": "sensors/garage"})
    assert res.json()["deleted_count"] == 1
    assert coordinator.db.count() == 2
    assert not coordinator.tree.is_empty

    res = client.delete("/messages")
    assert res.json()["deleted_count"] == 2
    assert coordinator.db.count() == 0
    assert coordinator.tree.is_empty


def test_stats(client):
    data = client.get("/stats").json()
    assert data["total_messages"] == 3
    assert data["topic_count"] == 3
    assert data["messages_by_topic"]["sensors/garage/temp"] == 1


def test_tree_and_matching(client):
    data = client.get("/tree").json()
    assert data["topic_count"] == 3
    assert data["message_count"] == 3
    assert data["tree"][0]["name"] == "sensors"

    res = client.get("/tree/matching", params={"pattern": "sensors/+/temp"})
    assert res.json()["topics"] == ["sensors/kitchen/temp", "sensors/garage/temp"]

    assert client.get("/tree/matching", params={"pattern": "a/#/b"}).status_code == 400


def test_exports(client):
    res = client.get("/export.json", params={"topic": "sensors/kitchen"})
    assert res.status_code == 200
    assert [r["timestamp"] for r in json.loads(res.text)] == [200, 100]

    res = client.get("/export.csv")
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    assert res.text.split("\n")[0] == "ID,Topic,Payload,QoS,Retained,Timestamp,DateTime"
    assert len(res.text.split("\n")) == 4


def test_retention(client, coordinator):
    assert client.post("/retention", json={}).status_code == 400

    res = client.post("/retention", json={"max_messages": 1})
    assert res.status_code == 200
    assert res.json()["deleted_by_count"] == 2
    assert coordinator.db.count() == 1


def test_exports_accept_every_search_filter(client, coordinator):
    coordinator.ingest(
        make_record(
            topic="sensors/garage/temp",
            payload="13.0",
            qos=1,
            retained=True,
            timestamp=400,
            connection_id="rec-1",
        )
    )

    res = client.get("/export.json", params={"qos": 1})
    assert [r["timestamp"] for r in json.loads(res.text)] == [400]

    res = client.get("/export.json", params={"retained": "false", "topic": "sensors/garage"})
    assert [r["timestamp"] for r in json.loads(res.text)] == [300]

    res = client.get("/export.csv", params={"connection_id": "rec-1"})
    assert len(res.text.split("\n")) == 2
