"""Live topic tree built from the message stream.

Nodes live in an arena (a list addressed by index) and each node maps child
segment names to arena indices. Counts and the cached last message belong to
the exact topic only; ancestors are not credited with their descendants'
traffic.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from mqtt_history.codec import display_payload
from mqtt_history.models import MessageRecord
from mqtt_history.topics import MULTI_LEVEL, compile_pattern, is_wildcard, split_topic

ROOT = 0


@dataclass(slots=True)
class TopicNode:
    name: str
    full_path: str
    children: dict[str, int] = field(default_factory=dict)
    message_count: int = 0
    last_message: MessageRecord | None = None
    subscribed: bool = False


def _message_summary(record: MessageRecord | None) -> dict[str, Any] | None:
    if record is None:
        return None
    return {
        "message_id": record.message_id,
        "topic": record.topic,
        "payload": display_payload(record.payload),
        "qos": record.qos,
        "retained": record.retained,
        "timestamp": record.timestamp,
    }


class TopicTree:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._nodes: list[TopicNode] = [TopicNode(name="", full_path="")]

    def _walk(self, topic: str, *, create: bool) -> int | None:
        idx = ROOT
        path = ""
        for i, segment in enumerate(split_topic(topic)):
            path = segment if i == 0 else f"{path}/{segment}"
            child = self._nodes[idx].children.get(segment)
            if child is None:
                if not create:
                    return None
                child = len(self._nodes)
                self._nodes.append(TopicNode(name=segment, full_path=path))
                self._nodes[idx].children[segment] = child
            idx = child
        return idx

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return len(self._nodes) == 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes) - 1

    def absorb(self, record: MessageRecord) -> None:
        with self._lock:
            idx = self._walk(record.topic, create=True)
            assert idx is not None
            node = self._nodes[idx]
            node.message_count += 1
            node.last_message = record

    def mark_subscribed(self, topic: str, subscribed: bool) -> int:
        """Set the subscription flag; returns how many nodes were marked.

        A concrete topic is created if it was never seen, so a subscription can
        precede its first message. A wildcard filter marks the existing nodes it
        matches.
        """
        with self._lock:
            if is_wildcard(topic):
                pattern = compile_pattern(topic, literal_prefix=False)
                marked = 0
                for node in self._nodes[1:]:
                    if pattern(node.full_path):
                        node.subscribed = subscribed
                        marked += 1
                return marked
            idx = self._walk(topic, create=True)
            assert idx is not None
            self._nodes[idx].subscribed = subscribed
            return 1

    def matching_topics(self, pattern: str) -> list[str]:
        """Paths of existing nodes matched by ``pattern`` (depth-first, first-seen order).

        Uses plain MQTT semantics: a pattern without wildcards names one node.
        """
        compiled = compile_pattern(pattern, literal_prefix=False)
        max_depth = None if compiled.levels[-1] == MULTI_LEVEL else len(compiled.levels)
        out: list[str] = []
        with self._lock:
            stack = [(child, 1) for child in reversed(self._nodes[ROOT].children.values())]
            while stack:
                idx, depth = stack.pop()
                node = self._nodes[idx]
                if compiled(node.full_path):
                    out.append(node.full_path)
                if max_depth is not None and depth >= max_depth:
                    continue
                stack.extend((child, depth + 1) for child in reversed(node.children.values()))
        return out

    def find_node(self, topic: str) -> dict[str, Any] | None:
        """Summary of the node at ``topic`` (child names only), or None."""
        with self._lock:
            idx = self._walk(topic, create=False)
            if idx is None:
                return None
            node = self._nodes[idx]
            return {
                "name": node.name,
                "full_path": node.full_path,
                "message_count": node.message_count,
                "subscribed": node.subscribed,
                "last_message": _message_summary(node.last_message),
                "children": list(node.children),
            }

    def total_message_count(self) -> int:
        with self._lock:
            return sum(n.message_count for n in self._nodes)

    def topic_count(self) -> int:
        """Number of topics that received at least one message."""
        with self._lock:
            return sum(1 for n in self._nodes if n.message_count > 0)

    def clear(self) -> None:
        with self._lock:
            self._nodes = [TopicNode(name="", full_path="")]

    def replace_with(self, other: TopicTree) -> None:
        """Adopt the nodes of ``other``, which must not be used afterwards."""
        with other._lock:
            nodes = other._nodes
        with self._lock:
            self._nodes = nodes

    def to_serializable(self) -> list[dict[str, Any]]:
        """Nested plain-dict copy of the tree, safe to hand to another thread."""
        roots: list[dict[str, Any]] = []
        with self._lock:
            stack = [(child, roots) for child in reversed(self._nodes[ROOT].children.values())]
            while stack:
                idx, siblings = stack.pop()
                node = self._nodes[idx]
                item: dict[str, Any] = {
                    "name": node.name,
                    "full_path": node.full_path,
                    "message_count": node.message_count,
                    "subscribed": node.subscribed,
                    "last_message": _message_summary(node.last_message),
                    "children": [],
                }
                siblings.append(item)
                stack.extend((child, item["children"]) for child in reversed(node.children.values()))
        return roots
