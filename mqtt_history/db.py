from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Any, cast

from mqtt_history.codec import format_export_csv, format_export_json, payload_text, validate_record
from mqtt_history.common import json_dumps, json_loads, now_ms
from mqtt_history.models import (
    InvalidFilterError,
    MessageFilter,
    MessageRecord,
    Statistics,
    payload_words,
)
from mqtt_history.topics import compile_pattern

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"

STATS_WINDOW_MS = 60_000
DEFAULT_TOP_TOPICS = 10

_MESSAGE_COLUMNS = (
    "m.seq, m.message_id, m.topic, m.payload, m.qos, m.retained, m.timestamp, "
    "m.connection_id, m.user_properties_json"
)


class DBBusyError(RuntimeError):
    pass


class SchemaMismatchError(RuntimeError):
    pass


class StoreError(RuntimeError):
    pass


class MessageNotFoundError(RuntimeError):
    pass


class SearchUnavailableError(RuntimeError):
    pass


class SearchCancelledError(RuntimeError):
    pass


def _default_db_path() -> str:
    return str(Path("~/.mqtt_history/history.sqlite").expanduser())


def _ensure_parent_dir(path: str) -> None:
    p = Path(path)
    if p.name == ":memory:":
        return
    p.parent.mkdir(parents=True, exist_ok=True)


def _translate_error(e: sqlite3.Error) -> RuntimeError:
    msg = str(e).lower()
    if isinstance(e, sqlite3.OperationalError) and ("locked" in msg or "busy" in msg):
        return DBBusyError(str(e))
    return StoreError(f"Message history storage failed: {e}")


def _sql_topic_matches(pattern: str, topic: str) -> int:
    return int(compile_pattern(pattern)(topic))


def fts_query(text: str) -> str:
    """Turn free text into an FTS5 query: every word must appear, as a token prefix."""
    tokens = payload_words(text)
    if not tokens:
        raise InvalidFilterError("payload_search must contain at least one word")
    return " AND ".join(f'"{t}"*' for t in tokens)


class MessageHistoryDB:
    """SQLite-backed history of every MQTT message seen by the client.

    Writes go through one long-lived connection guarded by a lock, so there is a
    single writer per process. Reads open their own connection and rely on WAL
    snapshots: a query sees the database as of its statement and never blocks
    on the writer. A ``:memory:`` store has no WAL, so there reads and writes
    take turns on the writer lock.
    """

    def __init__(self, *, path: str | None = None) -> None:
        raw_path = path or os.environ.get("MQTT_HISTORY_DB") or _default_db_path()
        self._uri = False
        self._keeper: sqlite3.Connection | None = None
        if raw_path == ":memory:":
            # Every connection must see the same in-memory database.
            self._target = f"file:mqtt-history-{uuid.uuid4().hex}?mode=memory&cache=shared"
            self._uri = True
        else:
            raw_path = str(Path(raw_path).expanduser())
            self._target = raw_path
        self.path = raw_path
        self._fts_available: bool | None = None
        self._schema_ready = False
        self._schema_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._writer: sqlite3.Connection | None = None

    def _open(self) -> sqlite3.Connection:
        _ensure_parent_dir(self.path)
        try:
            conn = sqlite3.connect(
                self._target,
                timeout=2.0,
                uri=self._uri,
                isolation_level=None,
                check_same_thread=False,
            )
        except sqlite3.OperationalError as e:  # pragma: no cover
            raise _translate_error(e) from e
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=2000;")
        conn.create_function("topic_matches", 2, _sql_topic_matches, deterministic=True)
        if self._uri and self._keeper is None:
            self._keeper = conn
            conn = self._open()
        return conn

    def _prepare(self, conn: sqlite3.Connection) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            self._ensure_schema(conn)
            self._schema_ready = True

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Short-lived read connection.

        A shared-cache in-memory database has no WAL and locks whole tables, so
        there a read waits for the writer lock instead of failing an append.
        """
        with self._write_lock if self._uri else nullcontext():
            conn = self._open()
            try:
                self._prepare(conn)
                yield conn
            finally:
                conn.close()

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            if self._writer is None:
                self._writer = self._open()
            conn = self._writer
            self._prepare(conn)
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise _translate_error(e) from e
            try:
                yield conn
            except BaseException as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                if isinstance(exc, sqlite3.Error):
                    raise _translate_error(exc) from exc
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as e:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise _translate_error(e) from e

    def close(self) -> None:
        with self._write_lock:
            if self._writer is not None:
                self._writer.close()
                self._writer = None
            if self._keeper is not None:
                self._keeper.close()
                self._keeper = None

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        tables = {
            cast(str, r["name"])
            for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'",
            ).fetchall()
        }
        if "meta" not in tables:
            if tables:
                raise SchemaMismatchError(
                    "Database schema is outdated (missing schema version). "
                    "Wipe it with `mqtt-history db wipe --yes` or delete the file at $MQTT_HISTORY_DB."
                )
            conn.executescript(
                f"""
                CREATE TABLE meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );

                INSERT INTO meta(key, value)
                VALUES ('schema_version', '{SCHEMA_VERSION}');
                """
            )
        else:
            row = conn.execute(
                "SELECT value FROM meta WHERE key = 'schema_version'",
            ).fetchone()
            if row is None or cast(str, row["value"]) != SCHEMA_VERSION:
                raise SchemaMismatchError(
                    "Database schema version mismatch. "
                    "Wipe it with `mqtt-history db wipe --yes` or delete the file at $MQTT_HISTORY_DB."
                )

        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS messages (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              message_id TEXT NOT NULL UNIQUE,
              topic TEXT NOT NULL,
              payload BLOB NOT NULL,
              qos INTEGER NOT NULL,
              retained INTEGER NOT NULL,
              timestamp INTEGER NOT NULL,
              connection_id TEXT NULL,
              user_properties_json TEXT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_topic
              ON messages(topic);

            CREATE INDEX IF NOT EXISTS idx_messages_timestamp_seq
              ON messages(timestamp, seq);

            CREATE INDEX IF NOT EXISTS idx_messages_connection
              ON messages(connection_id);
            """
        )

        self._ensure_search_schema(conn)

    def _ensure_search_schema(self, conn: sqlite3.Connection) -> None:
        """Create the payload full-text index (FTS5) if this SQLite build has it."""
        try:
            conn.execute(
                """
                CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
                  payload_text,
                  tokenize='unicode61'
                );
                """
            )
        except sqlite3.OperationalError as e:
            # Some SQLite builds ship without FTS5. Payload search is optional; don't break the DB.
            msg = str(e).lower()
            if "fts5" in msg or "no such module" in msg:
                logger.warning("FTS5 unavailable; payload search disabled (%s)", e)
                self._fts_available = False
                return
            raise

        self._fts_available = True

        # Rows are indexed by append() so an indexing failure can be contained to one row.
        conn.executescript(
            """
            CREATE TRIGGER IF NOT EXISTS messages_fts_ad AFTER DELETE ON messages BEGIN
              DELETE FROM messages_fts WHERE rowid = old.seq;
            END;
            """
        )

    @property
    def fts_available(self) -> bool:
        # Initialized during _ensure_search_schema(). If we've never connected yet, assume False.
        return bool(self._fts_available)

    def _insert(self, conn: sqlite3.Connection, record: MessageRecord) -> int:
        props_json = (
            json_dumps(record.user_properties) if record.user_properties is not None else None
        )
        cur = conn.execute(
            """
            INSERT INTO messages(
              message_id, topic, payload, qos, retained, timestamp,
              connection_id, user_properties_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.message_id,
                record.topic,
                record.payload,
                record.qos,
                1 if record.retained else 0,
                record.timestamp,
                record.connection_id,
                props_json,
            ),
        )
        seq = cast(int, cur.lastrowid)
        self._index_payload(conn, seq=seq, record=record)
        return seq

    def _index_payload(self, conn: sqlite3.Connection, *, seq: int, record: MessageRecord) -> None:
        if not self._fts_available:
            return
        text = payload_text(record.payload)
        if not text:
            return
        conn.execute("SAVEPOINT fts_row")
        try:
            conn.execute(
                "INSERT INTO messages_fts(rowid, payload_text) VALUES (?, ?)",
                (seq, text),
            )
        except sqlite3.Error as e:
            conn.execute("ROLLBACK TO fts_row")
            logger.warning(
                "Payload of message %s not indexed; full-text search degraded for it: %s",
                record.message_id,
                e,
            )
        finally:
            conn.execute("RELEASE fts_row")

    def append(self, record: MessageRecord) -> None:
        """Persist one record and index its payload.

        Raises ``InvalidRecordError`` for a malformed record and ``StoreError`` /
        ``DBBusyError`` when the write fails.
        """
        validate_record(record)
        with self._write() as conn:
            self._insert(conn, record)

    def append_many(self, records: Iterable[MessageRecord]) -> int:
        """Persist a batch in one transaction; a bad record is logged and skipped."""
        stored = 0
        with self._write() as conn:
            for record in records:
                conn.execute("SAVEPOINT batch_row")
                try:
                    validate_record(record)
                    self._insert(conn, record)
                except (ValueError, sqlite3.Error) as e:
                    conn.execute("ROLLBACK TO batch_row")
                    logger.error(
                        "Skipping message %s in batch: %s",
                        getattr(record, "message_id", "?"),
                        e,
                    )
                else:
                    stored += 1
                finally:
                    conn.execute("RELEASE batch_row")
        return stored

    def _filter_sql(self, flt: MessageFilter) -> tuple[str, list[str], list[Any]]:
        """Return (FROM clause, WHERE terms, params) for a validated filter."""
        where: list[str] = []
        params: list[Any] = []
        source = "messages m"

        if flt.payload_search:
            match = fts_query(flt.payload_search)
            if not self.fts_available:
                raise SearchUnavailableError(
                    "FTS5 is not available on this SQLite build (cannot search payloads)."
                )
            source = "messages_fts JOIN messages m ON m.seq = messages_fts.rowid"
            where.append("messages_fts MATCH ?")
            params.append(match)

        if flt.topic is not None:
            pattern = compile_pattern(flt.topic)
            clause, clause_params = pattern.sql_predicate("m.topic")
            if clause is not None:
                where.append(clause)
                params.extend(clause_params)
            if not pattern.sql_exact:
                where.append("topic_matches(?, m.topic)")
                params.append(flt.topic)

        if flt.start_time is not None:
            where.append("m.timestamp >= ?")
            params.append(flt.start_time)
        if flt.end_time is not None:
            where.append("m.timestamp <= ?")
            params.append(flt.end_time)
        if flt.qos is not None:
            where.append("m.qos = ?")
            params.append(flt.qos)
        if flt.retained is not None:
            where.append("m.retained = ?")
            params.append(1 if flt.retained else 0)
        if flt.connection_id is not None:
            where.append("m.connection_id = ?")
            params.append(flt.connection_id)

        if flt.user_property_key:
            if flt.user_property_value is None:
                where.append(
                    "EXISTS (SELECT 1 FROM json_each(m.user_properties_json) j WHERE j.key = ?)"
                )
                params.append(flt.user_property_key)
            else:
                where.append(
                    """
                    EXISTS (
                      SELECT 1 FROM json_each(m.user_properties_json) j
                      WHERE j.key = ? AND (
                        (j.type = 'text' AND j.value = ?)
                        OR (j.type = 'array' AND EXISTS (
                          SELECT 1 FROM json_each(j.value) v WHERE v.value = ?
                        ))
                      )
                    )
                    """
                )
                params.extend(
                    [flt.user_property_key, flt.user_property_value, flt.user_property_value]
                )

        return source, where, params

    def search(
        self,
        flt: MessageFilter | None = None,
        *,
        timeout: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> list[MessageRecord]:
        """Return records matching every set field of ``flt``, newest first.

        The query is a single statement, so the result is a consistent snapshot.
        ``timeout`` (seconds) or ``cancel_event`` abort a running query with
        ``SearchCancelledError``.
        """
        flt = flt or MessageFilter()
        flt.validate()
        if flt.limit == 0:
            return []

        source, where, params = self._filter_sql(flt)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        params.append(-1 if flt.limit is None else flt.limit)
        params.append(flt.offset or 0)

        if cancel_event is not None and cancel_event.is_set():
            raise SearchCancelledError("search cancelled before it started")

        deadline = None if timeout is None else time.monotonic() + timeout

        def _should_abort() -> int:
            if cancel_event is not None and cancel_event.is_set():
                return 1
            if deadline is not None and time.monotonic() > deadline:
                return 1
            return 0

        with self.connect() as conn:
            if deadline is not None or cancel_event is not None:
                conn.set_progress_handler(_should_abort, 1000)
            try:
                rows = conn.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS}
                    FROM {source}
                    {where_sql}
                    ORDER BY m.timestamp DESC, m.seq DESC
                    LIMIT ? OFFSET ?
                    """,
                    tuple(params),
                ).fetchall()
            except sqlite3.OperationalError as e:
                if "interrupt" in str(e).lower():
                    raise SearchCancelledError("search cancelled or timed out") from e
                raise _translate_error(e) from e
            except sqlite3.Error as e:
                raise _translate_error(e) from e
        return [_record_from_row(r) for r in rows]

    def recent(self, *, limit: int = 100) -> list[MessageRecord]:
        return self.search(MessageFilter(limit=limit))

    def iter_all(
        self,
        *,
        batch_size: int = 500,
        after_seq: int = 0,
        upto_seq: int | None = None,
    ) -> Iterator[MessageRecord]:
        """Yield stored records in arrival order, one page at a time.

        ``after_seq``/``upto_seq`` bound the sequence range (see ``high_water_mark``).
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        last_seq = after_seq
        upper = -1 if upto_seq is None else upto_seq
        while True:
            with self.connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT {_MESSAGE_COLUMNS}
                    FROM messages m
                    WHERE m.seq > ? AND (? < 0 OR m.seq <= ?)
                    ORDER BY m.seq ASC
                    LIMIT ?
                    """,
                    (last_seq, upper, upper, batch_size),
                ).fetchall()
            if not rows:
                return
            for r in rows:
                yield _record_from_row(r)
            last_seq = cast(int, rows[-1]["seq"])

    def get_message(self, *, message_id: str) -> MessageRecord:
        with self.connect() as conn:
            row = conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages m WHERE m.message_id = ?",
                (message_id,),
            ).fetchone()
        if row is None:
            raise MessageNotFoundError(message_id)
        return _record_from_row(row)

    def count(self) -> int:
        with self.connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM messages").fetchone()
        return cast(int, row["n"])

    def high_water_mark(self) -> int:
        """Highest sequence number assigned so far (0 when nothing was ever stored)."""
        with self.connect() as conn:
            row = conn.execute("SELECT COALESCE(MAX(seq), 0) AS hw FROM messages").fetchone()
        return cast(int, row["hw"])

    def delete_message(self, *, message_id: str) -> bool:
        with self._write() as conn:
            cur = conn.execute("DELETE FROM messages WHERE message_id = ?", (message_id,))
            return cur.rowcount > 0

    def delete_matching(self, flt: MessageFilter) -> int:
        """Bulk delete every record matching ``flt`` (limit/offset respected)."""
        flt.validate()
        if flt.limit == 0:
            return 0
        source, where, params = self._filter_sql(flt)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        params.append(-1 if flt.limit is None else flt.limit)
        params.append(flt.offset or 0)
        with self._write() as conn:
            cur = conn.execute(
                f"""
                DELETE FROM messages WHERE seq IN (
                  SELECT m.seq FROM {source}
                  {where_sql}
                  ORDER BY m.timestamp DESC, m.seq DESC
                  LIMIT ? OFFSET ?
                )
                """,
                tuple(params),
            )
            deleted = cur.rowcount
        logger.info("Deleted %d message(s) matching filter", deleted)
        return deleted

    def clear(self) -> int:
        """Delete every record. Idempotent; returns how many were removed."""
        with self._write() as conn:
            cur = conn.execute("DELETE FROM messages")
            deleted = cur.rowcount
        logger.info("Cleared message history (%d message(s))", deleted)
        return deleted

    def delete_older_than(self, timestamp_ms: int, *, high_water: int | None = None) -> int:
        """Delete records with ``timestamp < timestamp_ms``.

        Only rows with ``seq <= high_water`` are eligible, so a record appended
        after the caller computed its cutoff is never removed. Without an
        explicit mark the current one is taken inside the delete transaction.
        """
        with self._write() as conn:
            if high_water is None:
                high_water = cast(
                    int,
                    conn.execute("SELECT COALESCE(MAX(seq), 0) AS hw FROM messages").fetchone()[
                        "hw"
                    ],
                )
            cur = conn.execute(
                "DELETE FROM messages WHERE timestamp < ? AND seq <= ?",
                (timestamp_ms, high_water),
            )
            deleted = cur.rowcount
        logger.info("Deleted %d message(s) older than %d", deleted, timestamp_ms)
        return deleted

    def trim_to_count(self, max_messages: int, *, high_water: int | None = None) -> int:
        """Keep only the newest ``max_messages`` records (by timestamp, then arrival)."""
        if max_messages < 0:
            raise ValueError("max_messages must be >= 0")
        with self._write() as conn:
            if high_water is None:
                high_water = cast(
                    int,
                    conn.execute("SELECT COALESCE(MAX(seq), 0) AS hw FROM messages").fetchone()[
                        "hw"
                    ],
                )
            cur = conn.execute(
                """
                DELETE FROM messages WHERE seq IN (
                  SELECT seq FROM messages
                  WHERE seq <= ?
                  ORDER BY timestamp DESC, seq DESC
                  LIMIT -1 OFFSET ?
                )
                """,
                (high_water, max_messages),
            )
            deleted = cur.rowcount
        logger.info("Trimmed %d message(s) to keep the newest %d", deleted, max_messages)
        return deleted

    def statistics(self, *, now: int | None = None, top_n: int = DEFAULT_TOP_TOPICS) -> Statistics:
        """Aggregate over the current contents, read inside one snapshot."""
        if top_n <= 0:
            raise ValueError("top_n must be > 0")
        now_ts = now_ms() if now is None else now
        with self.connect() as conn:
            try:
                conn.execute("BEGIN")
                try:
                    totals = conn.execute(
                        """
                        SELECT
                          COUNT(*) AS total,
                          COUNT(DISTINCT topic) AS topics,
                          COALESCE(SUM(LENGTH(payload)), 0) AS volume
                        FROM messages
                        """
                    ).fetchone()
                    by_topic = conn.execute(
                        """
                        SELECT topic, COUNT(*) AS n
                        FROM messages
                        GROUP BY topic
                        ORDER BY n DESC, topic ASC
                        LIMIT ?
                        """,
                        (top_n,),
                    ).fetchall()
                    recent = conn.execute(
                        "SELECT COUNT(*) AS n FROM messages WHERE timestamp >= ?",
                        (now_ts - STATS_WINDOW_MS,),
                    ).fetchone()
                finally:
                    conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                raise _translate_error(e) from e

        return Statistics(
            total_messages=cast(int, totals["total"]),
            messages_by_topic={r["topic"]: cast(int, r["n"]) for r in by_topic},
            messages_per_second=cast(int, recent["n"]) / (STATS_WINDOW_MS / 1000),
            data_volume=cast(int, totals["volume"]),
            topic_count=cast(int, totals["topics"]),
        )

    def export_json(self, flt: MessageFilter | None = None) -> str:
        return format_export_json(self.search(flt))

    def export_csv(self, flt: MessageFilter | None = None) -> str:
        return format_export_csv(self.search(flt))


def _record_from_row(row: sqlite3.Row) -> MessageRecord:
    props_json = row["user_properties_json"]
    return MessageRecord(
        message_id=row["message_id"],
        topic=row["topic"],
        payload=bytes(row["payload"]),
        qos=cast(int, row["qos"]),
        retained=bool(row["retained"]),
        timestamp=cast(int, row["timestamp"]),
        connection_id=row["connection_id"],
        user_properties=None if props_json is None else json_loads(props_json),
    )
