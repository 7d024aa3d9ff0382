"""Typed observer hubs used by the core to publish state and events.

External collaborators (UI, safety logging, memory extraction) register
callbacks here; they never see or mutate the underlying observer list.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventHub:
    """A named fan-out point for one kind of event.

    Callbacks are invoked synchronously, in registration order, on the
    thread/loop that emits. A callback that raises is logged and skipped;
    delivery to the remaining callbacks continues.

    Args:
        name: Name used in log messages (e.g., "connection_state").
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._observers: list[Callable[[Any], Any]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[Any], Any]) -> Callable[[], None]:
        """Register a callback.

        Args:
            callback: Called with each emitted value.

        Returns:
            A zero-argument function that removes the registration.
        """
        with self._lock:
            self._observers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Callable[[Any], Any]) -> None:
        """Remove a callback. Unknown callbacks are ignored."""
        with self._lock:
            try:
                self._observers.remove(callback)
            except ValueError:
                pass

    def emit(self, value: Any) -> None:
        """Deliver a value to every registered callback."""
        with self._lock:
            observers = list(self._observers)
        for callback in observers:
            try:
                callback(value)
            except Exception:
                logger.exception("Observer %r of '%s' failed", callback, self._name)

    @property
    def observer_count(self) -> int:
        """Number of registered callbacks."""
        with self._lock:
            return len(self._observers)
