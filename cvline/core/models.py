"""
core/models.py
--------------
Central data-transfer objects shared by the process, pipe and supervisor
layers. Kept to plain Python types so they can be published on the bus and
logged without circular imports.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

class ReadinessState(enum.Enum):
    """Channel readiness as seen by the supervisor."""

    UNINITIALIZED = "uninitialized"
    STARTING_PROCESS = "starting_process"
    AWAITING_PROCESS_SIGNAL = "awaiting_process_signal"
    OPENING_PIPES = "opening_pipes"
    READY = "ready"
    FAULTED = "faulted"

    def __str__(self) -> str:
        return self.value


class ProcessErrorCode(enum.Enum):
    """Why the detector process stopped serving."""

    CRASHED = "crashed"
    EXITED = "exited"


# ---------------------------------------------------------------------------
# Line protocol records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LineLocation:
    """A ``loc:`` record: detected line position."""

    x: int
    """Horizontal offset of the line. This is what callers read."""

    angle: int
    mass: int


@dataclass(frozen=True)
class HsvWindow:
    """An ``hsv:`` record: the detector's current colour calibration window."""

    hue: int
    hue_tolerance: int
    saturation: int
    saturation_tolerance: int
    value: int
    value_tolerance: int

    def scaled(self, factor: float) -> tuple[float, float, float]:
        """Return the three tolerances multiplied by *factor*."""
        return (
            self.hue_tolerance * factor,
            self.saturation_tolerance * factor,
            self.value_tolerance * factor,
        )


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SupervisorStatus:
    """Point-in-time snapshot of a supervisor, for CLI output and tests."""

    state: ReadinessState
    reading: int
    queued_commands: int
    process_running: bool
    pid: Optional[int]
    pipes_open: bool
    restarts: int
