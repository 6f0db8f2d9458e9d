from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Mapping
from typing import Any

from mqtt_history.codec import make_record, validate_record
from mqtt_history.config import Settings
from mqtt_history.db import MessageHistoryDB
from mqtt_history.events import Disposer, EventHub, EventName, Listener
from mqtt_history.models import MessageFilter, MessageRecord, Statistics
from mqtt_history.tree import TopicTree

logger = logging.getLogger(__name__)


class IngestionError(RuntimeError):
    """One or both sides of an ingestion failed for ``record``."""

    def __init__(
        self,
        record: MessageRecord,
        *,
        store_error: BaseException | None = None,
        tree_error: BaseException | None = None,
    ) -> None:
        parts = []
        if store_error is not None:
            parts.append(f"history: {store_error}")
        if tree_error is not None:
            parts.append(f"topic tree: {tree_error}")
        super().__init__(
            f"Failed to ingest message {record.message_id} on {record.topic!r} ({'; '.join(parts)})"
        )
        self.record = record
        self.store_error = store_error
        self.tree_error = tree_error


class IngestionCoordinator:
    """Single entry point for inbound messages.

    Owns the history store and the topic tree for one session. Every record is
    handed to both, in arrival order, before listeners are notified. The two
    writes are independent: a failure in one is logged and reported on the
    ``error`` channel without preventing the other.
    """

    def __init__(
        self,
        *,
        db: MessageHistoryDB | None = None,
        tree: TopicTree | None = None,
        settings: Settings | None = None,
        events: EventHub | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.db = db if db is not None else MessageHistoryDB(path=self.settings.db_path)
        self.tree = tree if tree is not None else TopicTree()
        self.events = events if events is not None else EventHub()
        self._connection_id: str | None = None
        # Keeps arrival order identical for the store and the tree.
        self._ingest_lock = threading.Lock()

    def __enter__(self) -> IngestionCoordinator:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self.events.clear()
        self.db.close()

    @property
    def connection_id(self) -> str | None:
        return self._connection_id

    def subscribe(self, event: EventName, listener: Listener) -> Disposer:
        return self.events.subscribe(event, listener)

    def on_message(
        self,
        topic: str,
        payload: bytes | str | None,
        qos: int = 0,
        retained: bool = False,
        *,
        connection_id: str | None = None,
        user_properties: Mapping[str, Any] | None = None,
        timestamp: int | None = None,
    ) -> MessageRecord:
        """Broker-client callback: build the record and ingest it."""
        record = make_record(
            topic=topic,
            payload=payload,
            qos=qos,
            retained=retained,
            timestamp=timestamp,
            connection_id=connection_id if connection_id is not None else self._connection_id,
            user_properties=user_properties,
        )
        self.ingest(record)
        return record

    def ingest(self, record: MessageRecord) -> IngestionError | None:
        """Store and index one record; returns the failure, if any, instead of raising it."""
        validate_record(record)
        store_error: Exception | None = None
        tree_error: Exception | None = None
        with self._ingest_lock:
            try:
                self.db.append(record)
            except Exception as e:
                store_error = e
                logger.error("Failed to store message %s: %s", record.message_id, e)
            try:
                self.tree.absorb(record)
            except Exception as e:
                tree_error = e
                logger.error("Failed to add message %s to topic tree: %s", record.message_id, e)

        return self._after_ingest(record, store_error=store_error, tree_error=tree_error)

    def ingest_batch(self, records: Iterable[MessageRecord]) -> int:
        """Ingest many records with one store transaction; returns how many were stored."""
        batch = [validate_record(r) for r in records]
        if not batch:
            return 0
        stored = 0
        store_error: Exception | None = None
        tree_errors: list[Exception | None] = []
        with self._ingest_lock:
            try:
                stored = self.db.append_many(batch)
            except Exception as e:
                store_error = e
                logger.error("Failed to store batch of %d message(s): %s", len(batch), e)
            for record in batch:
                try:
                    self.tree.absorb(record)
                except Exception as e:
                    tree_errors.append(e)
                    logger.error("Failed to add message %s to topic tree: %s", record.message_id, e)
                else:
                    tree_errors.append(None)
        for record, tree_error in zip(batch, tree_errors, strict=True):
            self._after_ingest(record, store_error=store_error, tree_error=tree_error)
        return stored

    def _after_ingest(
        self,
        record: MessageRecord,
        *,
        store_error: Exception | None,
        tree_error: Exception | None,
    ) -> IngestionError | None:
        error: IngestionError | None = None
        if store_error is not None or tree_error is not None:
            if (store_error is None) != (tree_error is None):
                logger.warning(
                    "Topic tree and message history diverged for message %s on %r",
                    record.message_id,
                    record.topic,
                )
            error = IngestionError(record, store_error=store_error, tree_error=tree_error)
            self.events.emit("error", error)
        self.events.emit("message", record)
        if tree_error is None:
            self.events.emit("tree_updated", record.topic)
        return error

    def mark_subscribed(self, topic: str, subscribed: bool) -> int:
        marked = self.tree.mark_subscribed(topic, subscribed)
        self.events.emit("tree_updated", topic)
        return marked

    def connection_changed(self, connection_id: str | None) -> bool:
        """Start a new broker session.

        The topic tree always starts empty for a new connection. Stored history
        is wiped only when ``settings.clear_history_on_connect`` is set; returns
        whether it was.
        """
        self._connection_id = connection_id
        with self._ingest_lock:
            self.tree.clear()
            history_cleared = False
            if self.settings.clear_history_on_connect:
                self.db.clear()
                history_cleared = True
        logger.info(
            "New connection %s: topic tree reset%s",
            connection_id or "<unspecified>",
            ", history cleared" if history_cleared else "",
        )
        self.events.emit(
            "cleared", {"connection_id": connection_id, "history_cleared": history_cleared}
        )
        return history_cleared

    def clear(self) -> int:
        """Wipe stored history and the topic tree together."""
        with self._ingest_lock:
            try:
                deleted = self.db.clear()
            finally:
                self.tree.clear()
        self.events.emit("cleared", {"connection_id": self._connection_id, "history_cleared": True})
        return deleted

    def rebuild_tree(self) -> int:
        """Replace the tree with one built from every stored record.

        History up to the current high-water mark is read into a fresh tree
        without holding the ingestion lock. Records stored meanwhile are
        replayed under the lock just before the swap.
        """
        high_water = self.db.high_water_mark()
        fresh = TopicTree()
        absorbed = 0
        for record in self.db.iter_all(upto_seq=high_water):
            fresh.absorb(record)
            absorbed += 1
        with self._ingest_lock:
            for record in self.db.iter_all(after_seq=high_water):
                fresh.absorb(record)
                absorbed += 1
            self.tree.replace_with(fresh)
        self.events.emit("tree_updated", None)
        return absorbed

    def search(
        self,
        flt: MessageFilter | None = None,
        *,
        cancel_event: threading.Event | None = None,
    ) -> list[MessageRecord]:
        timeout = self.settings.search_timeout_seconds or None
        return self.db.search(flt, timeout=timeout, cancel_event=cancel_event)

    def statistics(self) -> Statistics:
        return self.db.statistics()

    def tree_snapshot(self) -> list[dict[str, Any]]:
        return self.tree.to_serializable()

    def matching_topics(self, pattern: str) -> list[str]:
        return self.tree.matching_topics(pattern)

    def export_json(self, flt: MessageFilter | None = None) -> str:
        return self.db.export_json(flt)

    def export_csv(self, flt: MessageFilter | None = None) -> str:
        return self.db.export_csv(flt)

    def delete_older_than(self, timestamp_ms: int) -> int:
        return self.db.delete_older_than(timestamp_ms)
