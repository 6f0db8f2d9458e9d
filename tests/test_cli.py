from __future__ import annotations

import json
from pathlib import Path

from click.testing import CliRunner

from mqtt_history.cli import cli
from mqtt_history.codec import make_record
from mqtt_history.db import MessageHistoryDB
from mqtt_history.entrypoint import main
from mqtt_history.models import MessageFilter


def _seed(db_path: str) -> MessageHistoryDB:
    db = MessageHistoryDB(path=db_path)
    db.append(make_record(topic="sensors/kitchen/temp", payload="21.5", timestamp=100))
    db.append(make_record(topic="sensors/kitchen/humidity", payload="40", timestamp=200))
    db.append(make_record(topic="sensors/garage/temp", payload="12.0", timestamp=300))
    return db


def test_cli_messages_search_json(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    _seed(db_path)

    runner = CliRunner()
    res = runner.invoke(
        cli, ["--db-path", db_path, "messages", "search", "-t", "sensors/kitchen", "--json"]
    )
    assert res.exit_code == 0, res.output

    data = json.loads(res.output)
    assert [m["timestamp"] for m in data["messages"]] == [200, 100]
    assert data["messages"][0]["datetime"] == "1970-01-01T00:00:00.200Z"


def test_cli_messages_search_table(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    _seed(db_path)

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "messages", "search", "-t", "sensors/+/temp"])
    assert res.exit_code == 0, res.output

    assert "Messages: 2" in res.output
    assert "sensors/garage/temp" in res.output
    assert "humidity" not in res.output


def test_cli_messages_search_rejects_bad_pattern(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "messages", "search", "-t", "a/#/b"])
    assert res.exit_code == 1
    assert "Error:" in res.output


def test_cli_messages_export_csv_to_file(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    _seed(db_path)
    out = tmp_path / "out.csv"

    runner = CliRunner()
    res = runner.invoke(
        cli, ["--db-path", db_path, "messages", "export", "-f", "csv", "-o", str(out)]
    )
    assert res.exit_code == 0, res.output

    lines = out.read_text(encoding="utf-8").split("\n")
    assert lines[0] == "ID,Topic,Payload,QoS,Retained,Timestamp,DateTime"
    assert len(lines) == 4


def test_cli_messages_export_json_stdout(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    _seed(db_path)

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "messages", "export", "--since", "250"])
    assert res.exit_code == 0, res.output

    rows = json.loads(res.output)
    assert [r["topic"] for r in rows] == ["sensors/garage/temp"]


def test_cli_messages_delete_and_clear(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    db = _seed(db_path)
    first = db.search()[0]

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "messages", "delete", first.message_id])
    assert res.exit_code == 0, res.output
    assert db.count() == 2

    res = runner.invoke(cli, ["--db-path", db_path, "messages", "delete", first.message_id])
    assert res.exit_code == 1
    assert "Message not found" in res.output

    res = runner.invoke(cli, ["--db-path", db_path, "messages", "clear"], input="n\n")
    assert res.exit_code == 1
    assert db.count() == 2

    res = runner.invoke(cli, ["--db-path", db_path, "messages", "clear", "--yes"])
    assert res.exit_code == 0, res.output
    assert "Deleted 2 message(s)." in res.output
    assert db.count() == 0


def test_cli_stats_json(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    _seed(db_path)

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "stats", "--json"])
    assert res.exit_code == 0, res.output

    data = json.loads(res.output)
    assert data["total_messages"] == 3
    assert data["topic_count"] == 3
    assert data["data_volume"] == len("21.5") + len("40") + len("12.0")


def test_cli_retention_apply(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("MQTT_HISTORY_RETENTION_MAX_AGE_DAYS", raising=False)
    monkeypatch.delenv("MQTT_HISTORY_RETENTION_MAX_MESSAGES", raising=False)
    db_path = str(tmp_path / "history.sqlite")
    db = _seed(db_path)

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "retention", "apply"])
    assert res.exit_code == 1
    assert "No retention limit set" in res.output

    res = runner.invoke(cli, ["--db-path", db_path, "retention", "apply", "--max-messages", "1"])
    assert res.exit_code == 0, res.output
    assert "Deleted 2 message(s)" in res.output
    assert [r.timestamp for r in db.search()] == [300]


def test_cli_import_replays_jsonl_and_prints_tree(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    src = tmp_path / "capture.jsonl"
    src.write_text(
        "\n".join(
            [
                json.dumps({"topic": "home/lamp", "payload": "on", "timestamp": 1}),
                json.dumps({"topic": "home/lamp", "payload": "off", "timestamp": 2}),
                "",
                json.dumps({"topic": "home/door", "payload_base64": "/w==", "qos": 1}),
            ]
        ),
        encoding="utf-8",
    )

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "import", str(src)])
    assert res.exit_code == 0, res.output

    assert "Imported 3 of 3 message(s)." in res.output
    assert "  lamp (2)" in res.output
    assert "  door (1)" in res.output
    db = MessageHistoryDB(path=db_path)
    assert db.count() == 3
    assert db.search(MessageFilter(topic="home/door"))[0].payload == b"\xff"


def test_cli_import_reports_bad_line(tmp_path: Path) -> None:
    src = tmp_path / "bad.jsonl"
    src.write_text('{"topic": "ok", "payload": "1"}\n{"topic": "a/+"}\n', encoding="utf-8")

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", str(tmp_path / "h.sqlite"), "import", str(src)])
    assert res.exit_code == 1
    assert "bad.jsonl:2" in res.output


def test_cli_tree_and_pattern(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    _seed(db_path)

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "tree"])
    assert res.exit_code == 0, res.output
    assert res.output.splitlines()[:3] == ["sensors", "  kitchen", "    temp (1)"]

    res = runner.invoke(cli, ["--db-path", db_path, "tree", "-p", "sensors/+/temp"])
    assert res.exit_code == 0, res.output
    assert res.output.splitlines() == ["sensors/kitchen/temp", "sensors/garage/temp"]


def test_cli_db_wipe(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    _seed(db_path)

    runner = CliRunner()
    res = runner.invoke(cli, ["--db-path", db_path, "db", "wipe", "--yes"])
    assert res.exit_code == 0, res.output
    assert "Deleted" in res.output
    assert not Path(db_path).exists()

    res = runner.invoke(cli, ["--db-path", db_path, "db", "wipe", "--yes"])
    assert "Nothing to delete" in res.output


def test_entrypoint_exposes_cli_group(tmp_path: Path) -> None:
    db_path = str(tmp_path / "history.sqlite")
    _seed(db_path)

    runner = CliRunner()
    res = runner.invoke(main, ["cli", "--db-path", db_path, "stats"])
    assert res.exit_code == 0, res.output
    assert "Messages: 3" in res.output

    res = runner.invoke(main, [])
    assert res.exit_code == 0
    assert "serve" in res.output
