"""
core/bus.py
-----------
Publish/subscribe fan-out for supervisor events.

The supervisor publishes from its dispatch-loop thread and handlers run
right there, so they must be quick. A consumer on another thread (the CLI's
progress loop) subscribes a :class:`QueuedSubscriber` and drains it when it
gets round to it.

Topics
------
* ``state``        — :class:`~cvline.core.models.ReadinessState` after each transition
* ``location``     — :class:`~cvline.core.models.LineLocation` for every ``loc:`` record
* ``calibration``  — the ``hsv ...`` command echoed back to the detector
* ``console``      — ``(stream, line)`` for every detector console line
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

Topic = str
Handler = Callable[[Any], None]

TOPIC_STATE: Topic = "state"
TOPIC_LOCATION: Topic = "location"
TOPIC_CALIBRATION: Topic = "calibration"
TOPIC_CONSOLE: Topic = "console"


class DataBus:
    """Topic -> handlers. Handlers may be added from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[Topic, tuple[Handler, ...]] = {}

    def subscribe(self, topic: Topic, handler: Handler) -> None:
        with self._lock:
            self._handlers[topic] = self._handlers.get(topic, ()) + (handler,)

    def publish(self, topic: Topic, payload: Any) -> None:
        """Call every handler of *topic* with *payload*.

        A handler that raises is logged and skipped; the publisher (the
        supervisor's state machine) never sees the exception.
        """
        for handler in self._handlers.get(topic, ()):
            try:
                handler(payload)
            except Exception:
                logger.exception("Subscriber %r failed on topic '%s'", handler, topic)


class QueuedSubscriber:
    """Handler that parks payloads for another thread to collect."""

    def __init__(self) -> None:
        self._q: queue.SimpleQueue[Any] = queue.SimpleQueue()

    def __call__(self, payload: Any) -> None:
        self._q.put(payload)

    def drain(self) -> list[Any]:
        """Everything published since the last drain, oldest first."""
        items: list[Any] = []
        while True:
            try:
                items.append(self._q.get_nowait())
            except queue.Empty:
                return items
