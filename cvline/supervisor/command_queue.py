"""
supervisor/command_queue.py
---------------------------
FIFO of commands waiting for the detector channel to become ready.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable

from cvline.core.exceptions import PipeBusy, PipeWriteError

logger = logging.getLogger(__name__)


class CommandQueue:
    """Ordered pending commands.

    Only the dispatch loop touches the queue, so it carries no lock. A
    command leaves the queue only after it has been written, which keeps
    delivery exactly-once and in order across faults and restarts.
    """

    def __init__(self) -> None:
        self._items: deque[str] = deque()

    def enqueue(self, command: str) -> None:
        self._items.append(command)

    def drain(self, write: Callable[[str], None]) -> int:
        """Write queued commands oldest-first through *write*.

        Stops at the first :class:`PipeWriteError`, leaving that command and
        everything after it queued.

        Returns:
            Number of commands written.
        """
        sent = 0
        while self._items:
            command = self._items[0]
            try:
                write(command)
            except PipeBusy as exc:
                logger.debug("Flush paused after %d command(s), %d still queued: %s", sent, len(self._items), exc)
                break
            except PipeWriteError as exc:
                logger.warning("Flush stopped after %d command(s), %d still queued: %s", sent, len(self._items), exc)
                break
            self._items.popleft()
            sent += 1
        return sent

    def pending(self) -> list[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)
