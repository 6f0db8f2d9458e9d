from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Literal, get_args

logger = logging.getLogger(__name__)

EventName = Literal["message", "tree_updated", "error", "cleared"]
Listener = Callable[[Any], None]
Disposer = Callable[[], None]

EVENT_NAMES: tuple[str, ...] = get_args(EventName)


class EventHub:
    """Observer registry for ingestion events.

    ``subscribe`` returns a disposer; calling it (any number of times) removes
    the listener. Listeners run on the emitting thread. A failing listener is
    logged and does not affect the others.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listeners: dict[str, list[Listener]] = {name: [] for name in EVENT_NAMES}

    def subscribe(self, event: EventName, listener: Listener) -> Disposer:
        if event not in self._listeners:
            raise ValueError(f"unknown event: {event!r} (expected one of {', '.join(EVENT_NAMES)})")
        if not callable(listener):
            raise ValueError("listener must be callable")
        with self._lock:
            self._listeners[event].append(listener)

        def dispose() -> None:
            with self._lock:
                listeners = self._listeners[event]
                if listener in listeners:
                    listeners.remove(listener)

        return dispose

    def emit(self, event: EventName, payload: Any = None) -> None:
        with self._lock:
            listeners = list(self._listeners[event])
        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for %r event failed", event)

    def listener_count(self, event: EventName | None = None) -> int:
        with self._lock:
            if event is not None:
                return len(self._listeners[event])
            return sum(len(v) for v in self._listeners.values())

    def clear(self) -> None:
        with self._lock:
            for listeners in self._listeners.values():
                listeners.clear()
