"""
core/exceptions.py
------------------
Custom exception hierarchy for the cvline supervisor.

None of these cross the supervisor's public API: they are raised inside the
process / pipe layers and turned into readiness-state changes and log
records by :class:`~cvline.supervisor.supervisor.LineDetectorSupervisor`.
"""


class CVLineError(Exception):
    """Root exception for all cvline-specific errors."""


# --- Configuration ---

class ConfigError(CVLineError):
    """Raised when the configuration file is missing or invalid."""


# --- Process ---

class ProcessLaunchError(CVLineError):
    """Raised when the detector binary is missing or cannot be spawned."""


class ProcessCrash(CVLineError):
    """The detector died (OS error, exit, or 'terminating' sentinel)."""


# --- Pipes ---

class PipeError(CVLineError):
    """Base class for FIFO failures."""


class PipeOpenError(PipeError):
    """Raised when either FIFO cannot be opened. Transient; retried."""


class PipeReadError(PipeError):
    """A read from the inbound FIFO failed."""


class PipeWriteError(PipeError):
    """A write to the outbound FIFO failed or the FIFO is not open."""


class PipeBusy(PipeWriteError):
    """The detector is not draining its command FIFO; nothing was written.

    Not an error: the command stays queued and is sent once the FIFO
    drains.
    """


# --- Protocol ---

class MalformedRecord(CVLineError):
    """Raised when a tagged record has too few or non-integer fields."""

    def __init__(self, record: str, reason: str) -> None:
        super().__init__(f"{reason}: {record!r}")
        self.record = record
        self.reason = reason
