from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import click

from mqtt_history.codec import display_payload, record_from_dict, record_to_dict
from mqtt_history.common import json_loads
from mqtt_history.config import Settings, load_settings
from mqtt_history.db import (
    MessageHistoryDB,
    SearchCancelledError,
    SearchUnavailableError,
    StoreError,
)
from mqtt_history.ingest import IngestionCoordinator
from mqtt_history.models import InvalidFilterError, MessageFilter
from mqtt_history.retention import RetentionPolicy, apply_retention


@click.group()
@click.option(
    "--db-path",
    default=None,
    help="SQLite DB path (defaults to $MQTT_HISTORY_DB or ~/.mqtt_history/history.sqlite).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level (defaults to $MQTT_HISTORY_LOG_LEVEL or WARNING).",
)
@click.pass_context
def cli(ctx: click.Context, db_path: str | None, log_level: str | None) -> None:
    """Administrative CLI for the MQTT message history."""
    settings = load_settings().with_overrides(
        db_path=db_path, log_level=log_level.upper() if log_level else None
    )
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


def _settings(ctx: click.Context) -> Settings:
    if ctx.obj and "settings" in ctx.obj:
        return ctx.obj["settings"]
    return load_settings()


def _db(ctx: click.Context) -> MessageHistoryDB:
    return MessageHistoryDB(path=_settings(ctx).db_path)


def _coordinator(ctx: click.Context) -> IngestionCoordinator:
    settings = _settings(ctx)
    return IngestionCoordinator(db=MessageHistoryDB(path=settings.db_path), settings=settings)


def _parse_time(value: str | None) -> int | None:
    """Accept epoch milliseconds or an ISO-8601 datetime."""
    if value is None:
        return None
    if value.isdigit():
        return int(value)
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise click.BadParameter(f"not a timestamp or ISO datetime: {value}") from None
    return int(dt.timestamp() * 1000)


def _filter_options(f: Any) -> Any:
    options = [
        click.option("--topic", "-t", default=None, help="Topic or MQTT wildcard pattern."),
        click.option("--text", "payload_search", default=None, help="Full-text payload query."),
        click.option("--since", default=None, help="Start time (epoch ms or ISO datetime)."),
        click.option("--until", default=None, help="End time (epoch ms or ISO datetime)."),
        click.option("--qos", type=click.IntRange(0, 2), default=None),
        click.option("--retained/--not-retained", default=None),
        click.option("--connection-id", default=None),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _build_filter(
    *,
    topic: str | None,
    payload_search: str | None,
    since: str | None,
    until: str | None,
    qos: int | None,
    retained: bool | None,
    connection_id: str | None,
    limit: int | None = None,
    offset: int | None = None,
) -> MessageFilter:
    flt = MessageFilter(
        topic=topic,
        payload_search=payload_search,
        start_time=_parse_time(since),
        end_time=_parse_time(until),
        qos=qos,
        retained=retained,
        connection_id=connection_id,
        limit=limit,
        offset=offset,
    )
    try:
        flt.validate()
    except InvalidFilterError as e:
        raise click.ClickException(str(e)) from e
    return flt


def _run_search(db: MessageHistoryDB, flt: MessageFilter, *, timeout: float) -> list[Any]:
    try:
        return db.search(flt, timeout=timeout or None)
    except InvalidFilterError as e:
        raise click.ClickException(str(e)) from e
    except SearchUnavailableError as e:
        raise click.ClickException(f"Full-text search unavailable: {e}") from e
    except SearchCancelledError:
        raise click.ClickException("Search timed out.") from None
    except StoreError as e:
        raise click.ClickException(str(e)) from e


@cli.group("db")
def db_group() -> None:
    """Database operations."""


@db_group.command("wipe")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def db_wipe(ctx: click.Context, *, yes: bool) -> None:
    """Delete the local history SQLite database file (and WAL/SHM sidecars)."""
    db = _db(ctx)
    db_path = db.path
    if db_path == ":memory:":
        raise click.ClickException("Cannot wipe an in-memory DB.")

    candidates = [Path(db_path), Path(f"{db_path}-wal"), Path(f"{db_path}-shm")]
    click.echo(f"DB path: {candidates[0]}")
    existing = [p for p in candidates if p.exists()]
    if not existing:
        click.echo("Nothing to delete (DB file not found).")
        return

    click.echo("Will delete:")
    for p in existing:
        click.echo(f"- {p}")

    if not yes and not click.confirm("Delete these files?", default=False):
        raise click.ClickException("Canceled.")

    removed = 0
    for p in existing:
        try:
            p.unlink()
        except FileNotFoundError:  # pragma: no cover
            continue
        removed += 1

    click.echo(f"Deleted {removed} file(s).")


@cli.group("messages")
def messages_group() -> None:
    """Stored message operations."""


@messages_group.command("search")
@_filter_options
@click.option("--limit", type=int, default=None, help="Max results (default: page size).")
@click.option("--offset", type=int, default=0, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table.")
@click.pass_context
def messages_search(
    ctx: click.Context,
    *,
    topic: str | None,
    payload_search: str | None,
    since: str | None,
    until: str | None,
    qos: int | None,
    retained: bool | None,
    connection_id: str | None,
    limit: int | None,
    offset: int,
    as_json: bool,
) -> None:
    """Search stored messages, newest first."""
    settings = _settings(ctx)
    flt = _build_filter(
        topic=topic,
        payload_search=payload_search,
        since=since,
        until=until,
        qos=qos,
        retained=retained,
        connection_id=connection_id,
        limit=settings.page_size if limit is None else limit,
        offset=offset,
    )
    db = _db(ctx)
    records = _run_search(db, flt, timeout=settings.search_timeout_seconds)

    if as_json:
        click.echo(
            json.dumps(
                {"messages": [record_to_dict(r) for r in records]},
                ensure_ascii=True,
                sort_keys=True,
                indent=2,
            )
        )
        return

    click.echo(f"DB path: {db.path}")
    click.echo(f"Messages: {len(records)}")
    if not records:
        return

    headers = ["datetime", "topic", "qos", "retained", "payload"]
    rows = [
        {
            "datetime": datetime.fromtimestamp(r.timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S"),
            "topic": r.topic,
            "qos": str(r.qos),
            "retained": "yes" if r.retained else "",
            "payload": _preview(display_payload(r.payload)),
        }
        for r in records
    ]
    cols = {h: max([len(h)] + [len(row[h]) for row in rows]) for h in headers}
    click.echo(" ".join(h.ljust(cols[h]) for h in headers).rstrip())
    for row in rows:
        click.echo(" ".join(row[h].ljust(cols[h]) for h in headers).rstrip())


def _preview(text: str, width: int = 60) -> str:
    line = text.split("\n", 1)[0]
    if len(line) > width or "\n" in text:
        return line[:width] + " ..."
    return line


@messages_group.command("export")
@_filter_options
@click.option(
    "--format",
    "-f",
    "fmt",
    type=click.Choice(["json", "csv"], case_sensitive=False),
    default="json",
    show_default=True,
    help="Output format.",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default=None,
    help="Output file path (default: stdout).",
)
@click.pass_context
def messages_export(
    ctx: click.Context,
    *,
    topic: str | None,
    payload_search: str | None,
    since: str | None,
    until: str | None,
    qos: int | None,
    retained: bool | None,
    connection_id: str | None,
    fmt: str,
    output: str | None,
) -> None:
    """Export matching messages as JSON or CSV.

    Examples:

        mqtt-history cli messages export                      # JSON to stdout
        mqtt-history cli messages export -f csv -o out.csv    # CSV to a file
        mqtt-history cli messages export -t 'sensors/#'       # One subtree
    """
    from mqtt_history.codec import format_export_csv, format_export_json

    flt = _build_filter(
        topic=topic,
        payload_search=payload_search,
        since=since,
        until=until,
        qos=qos,
        retained=retained,
        connection_id=connection_id,
    )
    db = _db(ctx)
    records = _run_search(db, flt, timeout=_settings(ctx).search_timeout_seconds)
    if not records:
        click.echo("No messages to export.", err=True)
        return

    content = format_export_csv(records) if fmt.lower() == "csv" else format_export_json(records)
    if output:
        Path(output).write_text(content, encoding="utf-8")
        click.echo(f"Exported {len(records)} messages to {output}", err=True)
    else:
        click.echo(content)


@messages_group.command("delete")
@click.argument("message_id")
@click.pass_context
def messages_delete(ctx: click.Context, message_id: str) -> None:
    """Delete one stored message by id."""
    db = _db(ctx)
    if not db.delete_message(message_id=message_id):
        raise click.ClickException(f"Message not found: {message_id}")
    click.echo(f"Deleted message {message_id}.")


@messages_group.command("clear")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation.")
@click.pass_context
def messages_clear(ctx: click.Context, *, yes: bool) -> None:
    """Delete every stored message."""
    db = _db(ctx)
    click.echo(click.style(f"This will delete all messages in {db.path}.", fg="red"))
    if not yes and not click.confirm("Delete all messages?", default=False):
        raise click.ClickException("Canceled.")
    deleted = db.clear()
    click.echo(f"Deleted {deleted} message(s).")


@cli.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def stats(ctx: click.Context, *, as_json: bool) -> None:
    """Show message counts, rate and data volume."""
    db = _db(ctx)
    s = db.statistics()
    if as_json:
        click.echo(
            json.dumps(
                {
                    "total_messages": s.total_messages,
                    "topic_count": s.topic_count,
                    "data_volume": s.data_volume,
                    "messages_per_second": s.messages_per_second,
                    "messages_by_topic": s.messages_by_topic,
                },
                ensure_ascii=True,
                sort_keys=True,
                indent=2,
            )
        )
        return

    click.echo(f"DB path: {db.path}")
    click.echo(f"Messages: {s.total_messages}")
    click.echo(f"Topics: {s.topic_count}")
    click.echo(f"Data volume: {s.data_volume} bytes")
    click.echo(f"Rate (last minute): {s.messages_per_second:.2f} msg/s")
    if s.messages_by_topic:
        click.echo("Top topics:")
        width = max(len(t) for t in s.messages_by_topic)
        for topic, n in s.messages_by_topic.items():
            click.echo(f"  {topic.ljust(width)} {n}")


@cli.group("retention")
def retention_group() -> None:
    """Retention operations."""


@retention_group.command("apply")
@click.option("--max-age-days", type=click.IntRange(min=0), default=None)
@click.option("--max-messages", type=click.IntRange(min=0), default=None)
@click.pass_context
def retention_apply(
    ctx: click.Context, *, max_age_days: int | None, max_messages: int | None
) -> None:
    """Delete messages older than N days and/or beyond the newest N."""
    settings = _settings(ctx).with_overrides(
        retention_max_age_days=max_age_days, retention_max_messages=max_messages
    )
    policy = RetentionPolicy.from_settings(settings)
    if not policy.enabled:
        raise click.ClickException(
            "No retention limit set (use --max-age-days/--max-messages or the environment)."
        )
    result = apply_retention(_db(ctx), policy)
    click.echo(
        f"Deleted {result.deleted} message(s) "
        f"({result.deleted_by_age} by age, {result.deleted_by_count} by count)."
    )


def _echo_tree(nodes: list[dict[str, Any]], depth: int = 0) -> None:
    for node in nodes:
        marker = "*" if node["subscribed"] else ""
        count = f" ({node['message_count']})" if node["message_count"] else ""
        click.echo(f"{'  ' * depth}{node['name']}{marker}{count}")
        _echo_tree(node["children"], depth + 1)


@cli.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--quiet", "-q", is_flag=True, help="Do not print the resulting topic tree.")
@click.pass_context
def import_command(ctx: click.Context, path: str, *, quiet: bool) -> None:
    """Replay a JSONL file of messages through ingestion.

    Each line is one message object (``topic``, ``payload`` or ``payload_base64``,
    optional ``qos``, ``retained``, ``timestamp``, ``user_properties``).
    """
    records = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                records.append(record_from_dict(json_loads(line)))
            except ValueError as e:
                raise click.ClickException(f"{path}:{lineno}: {e}") from e

    with _coordinator(ctx) as coordinator:
        errors: list[Any] = []
        coordinator.subscribe("error", errors.append)
        stored = coordinator.ingest_batch(records)
        click.echo(f"Imported {stored} of {len(records)} message(s).")
        if errors:
            click.echo(f"{len(errors)} message(s) failed; see log for details.", err=True)
        if not quiet:
            _echo_tree(coordinator.tree_snapshot())


@cli.command("tree")
@click.option("--pattern", "-p", default=None, help="List topics matching an MQTT pattern.")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of text.")
@click.pass_context
def tree_command(ctx: click.Context, *, pattern: str | None, as_json: bool) -> None:
    """Show the topic tree rebuilt from stored history."""
    with _coordinator(ctx) as coordinator:
        coordinator.rebuild_tree()
        if pattern is not None:
            try:
                topics = coordinator.matching_topics(pattern)
            except InvalidFilterError as e:
                raise click.ClickException(str(e)) from e
            if as_json:
                click.echo(json.dumps({"pattern": pattern, "topics": topics}, indent=2))
            else:
                for t in topics:
                    click.echo(t)
            return

        snapshot = coordinator.tree_snapshot()
        if as_json:
            click.echo(json.dumps({"tree": snapshot}, ensure_ascii=True, indent=2))
            return
        if not snapshot:
            click.echo("No topics.")
            return
        _echo_tree(snapshot)


@cli.command("listen")
@click.option("--host", "-h", default="localhost", show_default=True)
@click.option("--port", "-p", type=int, default=1883, show_default=True)
@click.option(
    "--subscribe",
    "-s",
    "topics",
    multiple=True,
    default=["#"],
    show_default=True,
    help="Topic filter to subscribe to (repeatable).",
)
@click.option("--qos", type=click.IntRange(0, 2), default=0, show_default=True)
@click.option("--client-id", default="", help="MQTT client id (default: broker-assigned).")
@click.option("--username", default=None)
@click.option("--password", default=None)
@click.option("--tls", is_flag=True, help="Connect with TLS.")
@click.option("--mqtt-version", type=click.Choice(["3", "5"]), default="5", show_default=True)
@click.option(
    "--clear-history-on-connect/--keep-history-on-connect",
    default=None,
    help="Wipe stored history when a new broker connection is made.",
)
@click.pass_context
def listen(
    ctx: click.Context,
    *,
    host: str,
    port: int,
    topics: tuple[str, ...],
    qos: int,
    client_id: str,
    username: str | None,
    password: str | None,
    tls: bool,
    mqtt_version: str,
    clear_history_on_connect: bool | None,
) -> None:
    """Record broker traffic into the history store until interrupted."""
    try:
        from mqtt_history.listener import BrokerListener
    except ImportError:
        raise click.ClickException(
            "MQTT dependencies not installed. Install with: pip install 'mqtt-history[mqtt]'"
        ) from None
    from mqtt_history.retention import RetentionWorker

    settings = _settings(ctx).with_overrides(clear_history_on_connect=clear_history_on_connect)
    coordinator = IngestionCoordinator(
        db=MessageHistoryDB(path=settings.db_path), settings=settings
    )
    worker = RetentionWorker(
        coordinator.db,
        RetentionPolicy.from_settings(settings),
        interval_seconds=settings.retention_interval_seconds,
    )
    listener = BrokerListener(
        coordinator,
        host=host,
        port=port,
        subscriptions=[(t, qos) for t in topics],
        client_id=client_id,
        username=username,
        password=password,
        tls=tls,
        protocol_version=int(mqtt_version),
    )

    click.echo(click.style(f"Listening on {host}:{port} ({', '.join(topics)})", fg="green"))
    click.echo(click.style(f"DB path: {coordinator.db.path}", dim=True))
    click.echo(click.style("Press Ctrl+C to stop.", dim=True))
    worker.start()
    try:
        listener.loop_forever()
    except KeyboardInterrupt:
        click.echo()
    except OSError as e:
        raise click.ClickException(f"Cannot connect to {host}:{port}: {e}") from e
    finally:
        worker.stop()
        coordinator.close()
    click.echo(click.style(f"Stopped. Received {listener.received} message(s).", dim=True))
