"""Status events for the control plane.

Workers and the coordinator report progress as ``{worker_id, message, level}``
events. The bus mirrors every event to the standard logger at the event's
level, keeps a short history for ``Fleet.status()``, and fans events out to
subscribers such as :class:`JsonlStatusSink`. Events are for observability
only; nothing in the coordination protocol reads them back.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Deque, List, Optional

from .locks import status_lock
from .models import StatusEvent

__all__ = ["StatusBus", "JsonlStatusSink", "LEVELS"]

logger = logging.getLogger(__name__)

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

Subscriber = Callable[[StatusEvent], None]


class StatusBus:
    """Thread-safe fan-out of status events."""

    def __init__(self, history: int = 200) -> None:
        self._subscribers: List[Subscriber] = []
        self._recent: Deque[StatusEvent] = deque(maxlen=history)
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def emit(self, worker_id: str, message: str, level: str = "info") -> StatusEvent:
        event = StatusEvent(worker_id=worker_id, message=message, level=level)
        logger.log(LEVELS.get(level, logging.INFO), "[%s] %s", worker_id, message)
        with self._lock:
            self._recent.append(event)
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                logger.exception("Status subscriber %r failed", subscriber)
        return event

    def recent(self, worker_id: Optional[str] = None) -> List[StatusEvent]:
        with self._lock:
            events = list(self._recent)
        if worker_id is None:
            return events
        return [event for event in events if event.worker_id == worker_id]


class JsonlStatusSink:
    """Append status events to a JSONL file shared across processes."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def __call__(self, event: StatusEvent) -> None:
        line = json.dumps(event.to_dict(), sort_keys=True)
        with status_lock(self.path):
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
