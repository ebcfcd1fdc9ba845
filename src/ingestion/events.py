"""
In-process lifecycle events.

Listeners are registered explicitly with ``EventBus.on``. Every emission is
also written to the log as a structured ``event`` record, so a deployment
without listeners still has an audit trail.
"""

import logging
import threading
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Union

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], None]


class IngestionEvent(str, Enum):
    """Stable event names emitted by the engine."""

    SOURCE_ADDED = "sourceAdded"
    SOURCE_REMOVED = "sourceRemoved"
    SOURCE_UPDATED = "sourceUpdated"
    DISCOVERY_STARTED = "discoveryStarted"
    DISCOVERY_COMPLETED = "discoveryCompleted"
    DISCOVERY_FAILED = "discoveryFailed"
    DOCUMENT_PROCESSING_STARTED = "documentProcessingStarted"
    DOCUMENT_PROCESSING_COMPLETED = "documentProcessingCompleted"
    DOCUMENT_PROCESSING_FAILED = "documentProcessingFailed"
    BATCH_PROCESSING_STARTED = "batchProcessingStarted"
    BATCH_PROCESSING_COMPLETED = "batchProcessingCompleted"
    ERROR = "error"


class RegistryEvent(str, Enum):
    """Events emitted by the handler registry."""

    HANDLER_REGISTERED = "handlerRegistered"
    HANDLER_UNREGISTERED = "handlerUnregistered"
    HANDLER_ENABLED = "handlerEnabled"
    HANDLER_DISABLED = "handlerDisabled"
    REGISTRY_CLEANUP = "registryCleanup"


EventName = Union[IngestionEvent, RegistryEvent, str]


def _event_key(event: EventName) -> str:
    return event.value if isinstance(event, Enum) else str(event)


class EventBus:
    """
    Minimal synchronous publish/subscribe channel.

    A listener that raises is logged and skipped; it never interrupts the
    emitter or other listeners.
    """

    def __init__(self, name: str = "ingestion"):
        self.name = name
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: EventName, listener: Listener) -> None:
        with self._lock:
            self._listeners[_event_key(event)].append(listener)

    def off(self, event: EventName, listener: Listener) -> bool:
        key = _event_key(event)
        with self._lock:
            try:
                self._listeners[key].remove(listener)
                return True
            except ValueError:
                return False

    def listener_count(self, event: EventName) -> int:
        with self._lock:
            return len(self._listeners.get(_event_key(event), []))

    def emit(self, event: EventName, **payload: Any) -> None:
        key = _event_key(event)
        logger.debug(
            f"event {key}",
            extra={
                "event": key,
                "source_id": payload.get("source_id"),
                "payload": _loggable(payload),
            },
        )
        with self._lock:
            listeners = list(self._listeners.get(key, []))

        data = {"event": key, **payload}
        for listener in listeners:
            try:
                listener(data)
            except Exception as e:
                logger.warning(
                    f"Listener for '{key}' on bus '{self.name}' failed: {e}",
                    exc_info=True,
                    extra={"event": key},
                )


def _loggable(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only JSON-friendly scalar values for the log record."""
    out = {}
    for k, v in payload.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[k] = v
        elif isinstance(v, Enum):
            out[k] = v.value
        else:
            out[k] = type(v).__name__
    return out
