"""
process/signals.py
------------------
Maps free-form detector console output to protocol signals.

The detector has no structured handshake: it prints a line when it enters
its serving loop and another when it shuts down. The state machine only ever
sees :class:`ProcessSignal`, so a structured handshake can replace
:class:`SentinelSignalSource` without touching it.
"""

from __future__ import annotations

import enum
from typing import Optional, Protocol


class ProcessSignal(enum.Enum):
    SERVING = "serving"
    """The detector entered its serving loop; its FIFOs can be opened."""

    TERMINATING = "terminating"
    """The detector is shutting down, possibly without an OS-level error."""


class SignalSource(Protocol):
    def classify(self, line: str) -> Optional[ProcessSignal]: ...


class SentinelSignalSource:
    """Exact-match sentinel lines (surrounding whitespace ignored)."""

    def __init__(
        self,
        serving: str = "Entering video thread loop",
        terminating: str = "Terminating",
    ) -> None:
        self._table = {
            serving.strip(): ProcessSignal.SERVING,
            terminating.strip(): ProcessSignal.TERMINATING,
        }

    def classify(self, line: str) -> Optional[ProcessSignal]:
        return self._table.get(line.strip())
