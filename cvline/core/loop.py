"""
core/loop.py
------------
Single-threaded dispatch loop.

Every supervisor callback (console output, process exit, FIFO readability,
retry timers) runs here one at a time, so the readiness state machine never
sees two events interleave. Other threads hand work to
the loop with :meth:`EventLoop.call_soon`, which wakes the selector through
a self-pipe.

The loop can run on its own daemon thread (:meth:`start`) or be pumped by
hand with :meth:`run_once` / :meth:`run_until`, which is how the unit tests
drive it deterministically.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import os
import selectors
import threading
import time
from collections import deque
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]


class TimerHandle:
    """Returned by :meth:`EventLoop.call_later`; lets the caller cancel."""

    __slots__ = ("when", "callback", "args", "cancelled")

    def __init__(self, when: float, callback: Callback, args: tuple) -> None:
        self.when = when
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class EventLoop:
    """selectors-based reactor with a call queue and one-shot timers."""

    def __init__(self, name: str = "cvline-loop") -> None:
        self._name = name
        self._selector = selectors.DefaultSelector()
        self._lock = threading.Lock()
        self._ready: deque[tuple[Callback, tuple]] = deque()
        self._timers: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._readers: dict[int, Callback] = {}
        self._writers: dict[int, Callback] = {}

        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        os.set_blocking(self._wake_w, False)
        self._selector.register(self._wake_r, selectors.EVENT_READ, None)

        self._thread: Optional[threading.Thread] = None
        self._stop_evt = threading.Event()
        self._closed = False

    # ------------------------------------------------------------------
    # Scheduling (thread-safe)
    # ------------------------------------------------------------------

    def call_soon(self, callback: Callback, *args: Any) -> None:
        """Queue *callback* to run on the loop thread."""
        with self._lock:
            self._ready.append((callback, args))
        self._wakeup()

    def call_later(self, delay: float, callback: Callback, *args: Any) -> TimerHandle:
        """Run *callback* once, no earlier than *delay* seconds from now."""
        handle = TimerHandle(time.monotonic() + max(0.0, delay), callback, args)
        with self._lock:
            heapq.heappush(self._timers, (handle.when, next(self._seq), handle))
        self._wakeup()
        return handle

    # ------------------------------------------------------------------
    # Readers / writers (loop thread only)
    # ------------------------------------------------------------------

    def add_reader(self, fd: int, callback: Callback) -> None:
        """Call *callback()* whenever *fd* is readable. Replaces any previous reader."""
        self._readers[fd] = callback
        self._update_registration(fd)

    def remove_reader(self, fd: int) -> bool:
        """Stop watching *fd* for input. Returns False if it was not watched."""
        if self._readers.pop(fd, None) is None:
            return False
        self._update_registration(fd)
        return True

    def has_reader(self, fd: int) -> bool:
        return fd in self._readers

    def add_writer(self, fd: int, callback: Callback) -> None:
        """Call *callback()* whenever *fd* can take more output."""
        self._writers[fd] = callback
        self._update_registration(fd)

    def remove_writer(self, fd: int) -> bool:
        if self._writers.pop(fd, None) is None:
            return False
        self._update_registration(fd)
        return True

    def has_writer(self, fd: int) -> bool:
        return fd in self._writers

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def run_once(self, timeout: Optional[float] = 0.0) -> int:
        """Wait up to *timeout* seconds for work, run it, return callbacks run.

        ``timeout=None`` blocks until an event, a due timer or a wake-up.
        """
        with self._lock:
            wait = 0.0 if self._ready else timeout
            if self._timers:
                delay = max(0.0, self._timers[0][0] - time.monotonic())
                wait = delay if wait is None else min(wait, delay)

        handled = 0
        for key, events in self._selector.select(wait):
            if key.fd == self._wake_r:
                self._drain_wakeup()
                continue
            # Look callbacks up now: one earlier in this batch may have removed them.
            if events & selectors.EVENT_READ:
                reader = self._readers.get(key.fd)
                if reader is not None:
                    self._invoke(reader, ())
                    handled += 1
            if events & selectors.EVENT_WRITE:
                writer = self._writers.get(key.fd)
                if writer is not None:
                    self._invoke(writer, ())
                    handled += 1

        now = time.monotonic()
        with self._lock:
            while self._timers and self._timers[0][0] <= now:
                _, _, handle = heapq.heappop(self._timers)
                if not handle.cancelled:
                    self._ready.append((handle.callback, handle.args))
            batch = len(self._ready)

        for _ in range(batch):
            with self._lock:
                callback, args = self._ready.popleft()
            self._invoke(callback, args)
            handled += 1

        return handled

    def run_until(self, predicate: Callable[[], bool], timeout: float, step: float = 0.01) -> bool:
        """Pump the loop by hand until *predicate()* holds or *timeout* passes."""
        deadline = time.monotonic() + timeout
        while not predicate():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self.run_once(min(step, remaining))
        return True

    def start(self) -> None:
        """Run the loop on a daemon thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_evt.clear()
        self._thread = threading.Thread(target=self._run_forever, name=self._name, daemon=True)
        self._thread.start()
        logger.debug("EventLoop %s started", self._name)

    def stop(self, timeout: float = 5.0) -> None:
        """Ask the loop thread to exit and wait for it (unless called from it)."""
        self._stop_evt.set()
        thread = self._thread
        if thread is None:
            return
        if threading.current_thread() is thread:
            return
        self._write_wakeup()
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("EventLoop %s: thread did not exit within %.1fs", self._name, timeout)
        self._thread = None

    def close(self) -> None:
        """Stop the loop and release the selector. Idempotent."""
        if self._closed:
            return
        self.stop()
        self._closed = True
        self._selector.close()
        os.close(self._wake_r)
        os.close(self._wake_w)
        self._readers.clear()
        self._writers.clear()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def in_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_forever(self) -> None:
        while not self._stop_evt.is_set():
            self.run_once(timeout=None)
        logger.debug("EventLoop %s exiting", self._name)

    def _update_registration(self, fd: int) -> None:
        events = 0
        if fd in self._readers:
            events |= selectors.EVENT_READ
        if fd in self._writers:
            events |= selectors.EVENT_WRITE

        try:
            self._selector.get_key(fd)
            registered = True
        except KeyError:
            registered = False

        if not events:
            if registered:
                self._selector.unregister(fd)
        elif registered:
            self._selector.modify(fd, events)
        else:
            self._selector.register(fd, events)

    def _invoke(self, callback: Callback, args: tuple) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("EventLoop: callback %s raised", callback)

    def _wakeup(self) -> None:
        if self.in_loop_thread():
            return
        self._write_wakeup()

    def _write_wakeup(self) -> None:
        if self._closed:
            return
        try:
            os.write(self._wake_w, b"\0")
        except BlockingIOError:
            pass  # a wake-up is already pending

    def _drain_wakeup(self) -> None:
        try:
            while os.read(self._wake_r, 4096):
                pass
        except BlockingIOError:
            pass
