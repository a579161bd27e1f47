"""
pipes/handle.py
---------------
A single FIFO end owned by the supervisor.
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class PipeHandle:
    """Path + OS descriptor for one FIFO end.

    ``close()`` is a no-op when already closed, so no failure path can
    release the same descriptor twice.
    """

    def __init__(self, path: str | Path, flags: int) -> None:
        self.path = Path(path)
        self._flags = flags
        self._fd: Optional[int] = None

    @property
    def fd(self) -> Optional[int]:
        return self._fd

    @property
    def is_open(self) -> bool:
        return self._fd is not None

    def exists(self) -> bool:
        return self.path.exists()

    def is_fifo(self) -> bool:
        try:
            return stat.S_ISFIFO(self.path.stat().st_mode)
        except OSError:
            return False

    def open(self) -> int:
        """Open the FIFO with the handle's flags. Raises ``OSError``."""
        if self._fd is None:
            self._fd = os.open(self.path, self._flags)
        return self._fd

    def close(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            os.close(fd)
        except OSError as exc:
            logger.warning("%s: fifo close failed: %s", self.path, exc)

    def __repr__(self) -> str:
        return f"PipeHandle({str(self.path)!r}, fd={self._fd})"
