"""In-process event bus.

Components publish immutable event objects; collaborators (UI, logging,
metrics) subscribe instead of observing mutable fields::

    bus = EventBus()
    unsubscribe = bus.subscribe(lambda event: print(event))
    bus.publish(StateChanged(state=Idle()))
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], None]


@dataclass(frozen=True)
class StateChanged:
    state: Any


@dataclass(frozen=True)
class DownloadStarted:
    download_id: int
    model_name: str
    fraction: float = 0.0


@dataclass(frozen=True)
class DownloadProgress:
    download_id: int
    model_name: str
    fraction: float


@dataclass(frozen=True)
class StatusChanged:
    status: Any


class EventBus:
    def __init__(self) -> None:
        self._handlers: list[tuple[type | None, EventHandler]] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler, event_type: type | None = None) -> Callable[[], None]:
        """Register ``handler``; returns a callable that removes it again."""
        entry = (event_type, handler)
        with self._lock:
            self._handlers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._handlers:
                    self._handlers.remove(entry)

        return _unsubscribe

    def publish(self, event: Any) -> None:
        """Deliver ``event`` to every matching handler. Failures are logged, not raised."""
        with self._lock:
            handlers = list(self._handlers)
        for event_type, handler in handlers:
            if event_type is not None and not isinstance(event, event_type):
                continue
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", type(event).__name__)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
