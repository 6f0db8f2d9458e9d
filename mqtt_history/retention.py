from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from mqtt_history.common import now_ms
from mqtt_history.config import Settings
from mqtt_history.db import DBBusyError, MessageHistoryDB, SchemaMismatchError

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True, slots=True)
class RetentionPolicy:
    """Zero disables a limit."""

    max_age_days: int = 0
    max_messages: int = 0

    def __post_init__(self) -> None:
        if self.max_age_days < 0:
            raise ValueError("max_age_days must be >= 0")
        if self.max_messages < 0:
            raise ValueError("max_messages must be >= 0")

    @property
    def enabled(self) -> bool:
        return self.max_age_days > 0 or self.max_messages > 0

    @classmethod
    def from_settings(cls, settings: Settings) -> RetentionPolicy:
        return cls(
            max_age_days=settings.retention_max_age_days,
            max_messages=settings.retention_max_messages,
        )


@dataclass(frozen=True, slots=True)
class RetentionResult:
    deleted_by_age: int = 0
    deleted_by_count: int = 0

    @property
    def deleted(self) -> int:
        return self.deleted_by_age + self.deleted_by_count


def apply_retention(
    db: MessageHistoryDB, policy: RetentionPolicy, *, now: int | None = None
) -> RetentionResult:
    """Enforce ``policy`` once.

    The high-water mark is taken before the cutoff is computed, so records that
    arrive while this runs are never deleted.
    """
    if not policy.enabled:
        return RetentionResult()
    high_water = db.high_water_mark()
    now_ts = now_ms() if now is None else now

    by_age = 0
    if policy.max_age_days > 0:
        by_age = db.delete_older_than(now_ts - policy.max_age_days * DAY_MS, high_water=high_water)
    by_count = 0
    if policy.max_messages > 0:
        by_count = db.trim_to_count(policy.max_messages, high_water=high_water)

    result = RetentionResult(deleted_by_age=by_age, deleted_by_count=by_count)
    if result.deleted:
        logger.info(
            "Retention removed %d message(s) (%d by age, %d by count)",
            result.deleted,
            by_age,
            by_count,
        )
    return result


class RetentionWorker:
    """Background thread that applies a retention policy on an interval."""

    def __init__(
        self,
        db: MessageHistoryDB,
        policy: RetentionPolicy,
        *,
        interval_seconds: float,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.db = db
        self.policy = policy
        self.interval_seconds = interval_seconds
        self.last_result: RetentionResult | None = None
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> RetentionResult:
        result = apply_retention(self.db, self.policy)
        self.last_result = result
        return result

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except SchemaMismatchError as e:
                logger.error("Retention worker stopping: %s", e)
                return
            except DBBusyError:
                logger.debug("Retention skipped: database busy")
            except Exception:
                logger.exception("Retention run failed")
            self._stop_event.wait(self.interval_seconds)

    def start(self) -> bool:
        """Start the thread; returns False if the policy is disabled or it already runs."""
        if not self.policy.enabled:
            return False
        with self._lock:
            if self.running:
                return False
            self._stop_event.clear()
            t = threading.Thread(target=self._loop, name="mqtt-history-retention", daemon=True)
            t.start()
            self._thread = t
        return True

    def stop(self, *, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is not None:
            thread.join(timeout)
