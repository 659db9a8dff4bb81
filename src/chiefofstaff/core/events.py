"""In-process event bus for the Chief of Staff daemon.

Every notification the daemon, the agent registry, and the task store
publish is one of the ``EventType`` members below.  Subscribers are
invoked synchronously on the publishing thread; a failing subscriber is
logged and never affects the publisher or the other subscribers.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
import logging
import threading
from typing import Any, Callable, Dict, List

from chiefofstaff.core.logging_config import log_bus_event

logger = logging.getLogger("chiefofstaff.events")


class EventType(str, Enum):
    TASK_READY = "task:ready"
    EVALUATION = "evaluation"
    AGENT_SPAWNED = "agent:spawned"
    AGENT_UPDATED = "agent:updated"
    AGENT_OUTPUT = "agent:output"
    AGENT_COMPLETED = "agent:completed"
    AGENT_TERMINATE = "agent:terminate"
    AGENTS_CHANGED = "agents:changed"
    HEALTH_CHECK = "health:check"
    HEALTH_CRITICAL = "health:critical"
    STATUS = "status"
    STATUS_PAUSED = "status:paused"
    STATUS_RESUMED = "status:resumed"
    TASKS_CHANGED = "tasks:changed"
    CONFIG_CHANGED = "config:changed"
    LOG = "log"


LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "success": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

Handler = Callable[[Any], None]


class EventBus:
    """Typed publish/subscribe fan-out."""

    def __init__(self) -> None:
        self._handlers: Dict[EventType, List[Handler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *event_type*. Returns an unsubscribe callable."""
        event_type = EventType(event_type)
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def publish(self, event_type: EventType, payload: Any = None) -> None:
        event_type = EventType(event_type)
        with self._lock:
            handlers = list(self._handlers.get(event_type, []))
        log_bus_event(event_type.value, payload)
        for handler in handlers:
            try:
                handler(payload)
            except Exception:  # noqa: BLE001
                logger.exception("Event handler for %s failed", event_type.value)

    def handler_count(self, event_type: EventType) -> int:
        with self._lock:
            return len(self._handlers.get(EventType(event_type), []))


def emit_log(bus: EventBus, level: str, message: str, **data: Any) -> dict:
    """Publish a structured ``log`` event and mirror it to the Python logger."""
    if level not in LOG_LEVELS:
        level = "info"
    entry: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "level": level,
        "message": message,
    }
    entry.update(data)
    logger.log(LOG_LEVELS[level], message)
    bus.publish(EventType.LOG, entry)
    return entry
