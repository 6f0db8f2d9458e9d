from __future__ import annotations

import threading
import time

import pytest

from mqtt_history.codec import make_record
from mqtt_history.config import Settings
from mqtt_history.db import MessageHistoryDB
from mqtt_history.retention import (
    DAY_MS,
    RetentionPolicy,
    RetentionWorker,
    apply_retention,
)


def _db(tmp_path) -> MessageHistoryDB:
    return MessageHistoryDB(path=str(tmp_path / "history.sqlite"))


def test_policy_validation_and_enabled():
    assert not RetentionPolicy().enabled
    assert RetentionPolicy(max_age_days=1).enabled
    assert RetentionPolicy(max_messages=10).enabled
    with pytest.raises(ValueError):
        RetentionPolicy(max_age_days=-1)
    with pytest.raises(ValueError):
        RetentionPolicy(max_messages=-1)


def test_policy_from_settings():
    policy = RetentionPolicy.from_settings(
        Settings(retention_max_age_days=7, retention_max_messages=1000)
    )
    assert policy == RetentionPolicy(max_age_days=7, max_messages=1000)


def test_apply_retention_by_age(tmp_path):
    db = _db(tmp_path)
    now = 10 * DAY_MS
    db.append(make_record(topic="a", payload="old", timestamp=now - 3 * DAY_MS))
    db.append(make_record(topic="a", payload="new", timestamp=now - DAY_MS // 2))

    result = apply_retention(db, RetentionPolicy(max_age_days=1), now=now)

    assert result.deleted_by_age == 1
    assert result.deleted == 1
    assert [r.payload for r in db.search()] == [b"new"]


def test_apply_retention_by_count(tmp_path):
    db = _db(tmp_path)
    for i in range(5):
        db.append(make_record(topic="a", payload=str(i), timestamp=i))

    result = apply_retention(db, RetentionPolicy(max_messages=2))

    assert result.deleted_by_count == 3
    assert [r.payload for r in db.search()] == [b"4", b"3"]


def test_apply_retention_disabled_is_noop(tmp_path):
    db = _db(tmp_path)
    db.append(make_record(topic="a", payload="x", timestamp=0))
    assert apply_retention(db, RetentionPolicy()).deleted == 0
    assert db.count() == 1


def test_worker_runs_until_stopped(tmp_path):
    db = _db(tmp_path)
    for i in range(3):
        db.append(make_record(topic="a", payload=str(i), timestamp=i))
    worker = RetentionWorker(db, RetentionPolicy(max_messages=1), interval_seconds=0.05)

    assert worker.start() is True
    assert worker.start() is False
    deadline = time.monotonic() + 5
    while db.count() > 1 and time.monotonic() < deadline:
        time.sleep(0.01)
    worker.stop()

    assert db.count() == 1
    assert not worker.running
    assert worker.last_result is not None


def test_worker_disabled_policy_does_not_start(tmp_path):
    worker = RetentionWorker(_db(tmp_path), RetentionPolicy(), interval_seconds=1)
    assert worker.start() is False
    assert not worker.running


def test_worker_rejects_bad_interval(tmp_path):
    with pytest.raises(ValueError):
        RetentionWorker(_db(tmp_path), RetentionPolicy(max_messages=1), interval_seconds=0)


def test_retention_alongside_appends_keeps_fresh_records(tmp_path):
    db = _db(tmp_path)
    for i in range(100):
        db.append(make_record(topic="old", payload=str(i), timestamp=i))
    policy = RetentionPolicy(max_age_days=1)
    errors: list[BaseException] = []

    def write() -> None:
        try:
            for i in range(300):
                db.append(make_record(topic="fresh", payload=str(i)))
        except BaseException as e:
            errors.append(e)

    writer = threading.Thread(target=write)
    writer.start()
    while writer.is_alive():
        apply_retention(db, policy)
    writer.join()
    apply_retention(db, policy)

    assert errors == []
    assert db.count() == 300
    assert {r.topic for r in db.search()} == {"fresh"}
