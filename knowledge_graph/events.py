"""
Expansion lifecycle notifications.

Payloads by event:
    started              {job_id}
    progress             {job_id, depth, progress_percent, generated_node_count, generated_edge_count}
    completed            {job_id, node_count, edge_count}
    partially_completed  {job_id, reason}
    failed               {job_id, error}
    cancelled            {job_id}
"""

import logging
from enum import Enum
from typing import Callable, Dict, Any, List

logger = logging.getLogger(__name__)

Listener = Callable[["ExpansionEvent", Dict[str, Any]], None]


class ExpansionEvent(str, Enum):
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventChannel:
    """Explicit listener registry; listeners receive (event, payload)"""

    def __init__(self):
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a function that removes it"""
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: Listener) -> bool:
        try:
            self._listeners.remove(listener)
            return True
        except ValueError:
            return False

    def emit(self, event: ExpansionEvent, payload: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, dict(payload))
            except Exception as exc:
                logger.error(f"Listener for {event.value} failed: {exc}")
