from __future__ import annotations

import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from ..io_utils import append_jsonl, read_jsonl_tail
from ..utils import _now_iso


class ChangeKind(str, Enum):
    WORKSPACE_UPDATED = "workspace_updated"
    NODE_UPDATED = "node_updated"
    LOG_UPDATED = "log_updated"
    REFERENCE_UPDATED = "reference_updated"
    DISPATCH_UPDATED = "dispatch_updated"
    CONTEXT_UPDATED = "context_updated"
    MEMO_UPDATED = "memo_updated"


Subscriber = Callable[[dict[str, Any]], None]


class EventBus:
    """Fan out change events to in-process subscribers and an append-only JSONL file.

    Events are emitted by the engine only after the mutation they describe
    has been saved; delivery and rendering belong to the subscribers.
    """

    def __init__(self, events_path: Optional[Path] = None) -> None:
        self._events_path = events_path
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def emit(
        self,
        *,
        kind: ChangeKind,
        workspace_id: str,
        node_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        event: dict[str, Any] = {
            "type": ChangeKind(kind).value,
            "workspace_id": workspace_id,
            "node_id": node_id,
            "timestamp": _now_iso(),
            "payload": dict(payload or {}),
        }
        if self._events_path is not None:
            try:
                append_jsonl(self._events_path, event)
            except OSError:
                logger.exception("Failed to append change event {} for {}", event["type"], workspace_id)
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Change event subscriber failed for {}", event["type"])
        return event

    def recent(self, limit: int = 100, workspace_id: Optional[str] = None) -> list[dict[str, Any]]:
        if self._events_path is None:
            return []
        scan = limit if workspace_id is None else max(limit * 5, limit)
        events = read_jsonl_tail(self._events_path, scan)
        if workspace_id is not None:
            events = [e for e in events if e.get("workspace_id") == workspace_id]
        return events[-limit:] if limit > 0 else []
