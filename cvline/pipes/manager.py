"""
pipes/manager.py
----------------
Owns the two FIFOs between the supervisor and the detector.

* inbound  — detector -> supervisor, opened ``O_RDONLY | O_NONBLOCK`` and
  watched by the dispatch loop
* outbound — supervisor -> detector, opened ``O_WRONLY | O_NONBLOCK`` (so
  the open fails fast with ``ENXIO`` instead of hanging when the detector
  is not reading yet) and kept non-blocking

Read handling follows a strict bracket: notifications off, one bounded
read, parse every complete record, notifications back on. A second
readiness event can therefore never interleave with a half-parsed batch.

Writes never block the loop. When the detector stops draining its command
FIFO, ``write`` raises :class:`PipeBusy` and the command stays with the
caller; the rest of a record cut short by a partial write is kept here and
sent before anything else. Once the FIFO drains, ``on_drained()`` fires so
the caller can flush again.

Persistent failures (writer hung up, repeated read/write errors) are
reported through ``on_fault(reason)``, always from a fresh loop callback so
the caller is never torn down from inside its own write. Until the caller
closes or reopens the pipes, a pending fault stops further I/O.
"""

from __future__ import annotations

import codecs
import logging
import os
from pathlib import Path
from typing import Callable, Optional

from cvline.core.exceptions import PipeBusy, PipeError, PipeOpenError, PipeReadError, PipeWriteError
from cvline.core.loop import EventLoop
from cvline.pipes.handle import PipeHandle
from cvline.protocol.records import split_records

logger = logging.getLogger(__name__)

RecordHandler = Callable[[str], None]
FaultHandler = Callable[[str], None]

_utf8_decoder = codecs.getincrementaldecoder("utf-8")


class PipeManager:
    """Inbound/outbound FIFO pair with a non-reentrant read callback."""

    def __init__(
        self,
        inbound_path: str | Path,
        outbound_path: str | Path,
        loop: EventLoop,
        on_record: RecordHandler,
        on_fault: FaultHandler,
        on_drained: Optional[Callable[[], None]] = None,
        read_buffer_size: int = 4000,
        max_io_errors: int = 3,
    ) -> None:
        self.inbound = PipeHandle(inbound_path, os.O_RDONLY | os.O_NONBLOCK)
        self.outbound = PipeHandle(outbound_path, os.O_WRONLY | os.O_NONBLOCK)
        self._loop = loop
        self._on_record = on_record
        self._on_fault = on_fault
        self._on_drained = on_drained
        self._read_size = read_buffer_size
        self._max_io_errors = max_io_errors

        self._decoder = _utf8_decoder(errors="replace")
        self._tail = ""
        self._unsent = b""
        self._read_errors = 0
        self._write_errors = 0
        self._generation = 0
        self._fault_pending = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.inbound.is_open and self.outbound.is_open

    @property
    def notifications_enabled(self) -> bool:
        fd = self.inbound.fd
        return fd is not None and self._loop.has_reader(fd)

    @property
    def fault_pending(self) -> bool:
        """A fault was reported and the pipes have not been closed since."""
        return self._fault_pending

    @property
    def write_blocked(self) -> bool:
        """Waiting for the detector to drain the command FIFO."""
        fd = self.outbound.fd
        return fd is not None and self._loop.has_writer(fd)

    def paths_exist(self) -> bool:
        return self.inbound.exists() and self.outbound.exists()

    # ------------------------------------------------------------------
    # Open / close
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open both FIFOs and start watching the inbound one. Idempotent.

        Raises:
            PipeOpenError: Either FIFO is missing, not a FIFO, or has no
                peer yet. Whatever was opened stays open for the retry.
        """
        if self.outbound.is_open:
            # A restarted detector needs a fresh writer.
            self._close_outbound()
        self._set_notifications(False)

        for handle in (self.inbound, self.outbound):
            if not handle.is_fifo():
                raise PipeOpenError(f"{handle.path} does not exist or is not a fifo")

        if not self.inbound.is_open:
            logger.info("Opening %s", self.inbound.path)
            try:
                self.inbound.open()
            except OSError as exc:
                raise PipeOpenError(f"Cannot open detector output fifo {self.inbound.path}: {exc}") from exc
            self._reset_reader()

        logger.info("Opening %s", self.outbound.path)
        try:
            self.outbound.open()
        except OSError as exc:
            raise PipeOpenError(f"Cannot open detector input fifo {self.outbound.path}: {exc}") from exc

        self._read_errors = 0
        self._write_errors = 0
        self._generation += 1
        self._fault_pending = False
        self._set_notifications(True)

    def close(self) -> None:
        """Stop notifications, close both FIFOs. Safe to call repeatedly."""
        self._set_notifications(False)
        self._generation += 1
        self._fault_pending = False
        self.inbound.close()
        self._close_outbound()
        self._reset_reader()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def write(self, command: str) -> None:
        """Write one newline-terminated record without blocking.

        Returns once the record is written or, after a partial write, once
        its remainder is held for sending ahead of any later record.

        Raises:
            PipeBusy:       The FIFO is full; *command* was not written.
            PipeWriteError: The outbound FIFO is closed, faulted, or the
                            write failed.
        """
        fd = self.outbound.fd
        if fd is None:
            raise PipeWriteError(f"{self.outbound.path}: fifo not open")
        if self._fault_pending:
            raise PipeWriteError(f"{self.outbound.path}: fifo fault pending")

        self._send_unsent()
        if self._unsent:
            self._watch_writable()
            raise PipeBusy(f"{self.outbound.path}: detector is not reading commands")

        data = (command + "\n").encode("utf-8")
        written = self._write_some(fd, data)
        if written == 0:
            self._watch_writable()
            raise PipeBusy(f"{self.outbound.path}: detector is not reading commands")
        if written < len(data):
            self._unsent = data[written:]
            self._watch_writable()

    def _write_some(self, fd: int, data: bytes) -> int:
        try:
            written = os.write(fd, data)
        except BlockingIOError:
            return 0
        except OSError as exc:
            err = PipeWriteError(f"{self.outbound.path}: fifo write failed: {exc}")
            self._write_errors += 1
            self._count_error(err, self._write_errors)
            raise err from exc
        self._write_errors = 0
        return written

    def _send_unsent(self) -> None:
        fd = self.outbound.fd
        if not self._unsent or fd is None:
            return
        written = self._write_some(fd, self._unsent)
        self._unsent = self._unsent[written:]

    def _on_writable(self) -> None:
        try:
            self._send_unsent()
        except PipeWriteError:
            self._stop_write_watch()
            return
        if self._unsent:
            return
        self._stop_write_watch()
        if self._on_drained is not None and not self._fault_pending:
            self._on_drained()

    # ------------------------------------------------------------------
    # Reading (loop thread)
    # ------------------------------------------------------------------

    def _on_readable(self) -> None:
        fd = self.inbound.fd
        if fd is None:
            return

        self._set_notifications(False)
        try:
            try:
                data = os.read(fd, self._read_size)
            except BlockingIOError:
                return
            except OSError as exc:
                self._read_errors += 1
                self._count_error(PipeReadError(f"{self.inbound.path}: fifo read failed: {exc}"), self._read_errors)
                return

            if not data:
                self._report_fault(f"{self.inbound.path}: detector closed its end of the fifo")
                return

            self._read_errors = 0
            records, self._tail = split_records(self._tail + self._decoder.decode(data))
            tail_bytes = len(self._tail.encode("utf-8"))
            if tail_bytes > self._read_size:
                logger.warning("%s: dropping %d bytes without a newline", self.inbound.path, tail_bytes)
                self._tail = ""

            for record in records:
                self._on_record(record)
                if not self.inbound.is_open:
                    break
        finally:
            if self.inbound.is_open and not self._fault_pending:
                self._set_notifications(True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _reset_reader(self) -> None:
        self._decoder = _utf8_decoder(errors="replace")
        self._tail = ""

    def _close_outbound(self) -> None:
        self._stop_write_watch()
        self.outbound.close()
        if self._unsent:
            logger.warning("%s: discarding %d unsent bytes", self.outbound.path, len(self._unsent))
        self._unsent = b""

    def _set_notifications(self, enabled: bool) -> None:
        fd = self.inbound.fd
        if fd is None:
            return
        if enabled:
            if not self._loop.has_reader(fd):
                self._loop.add_reader(fd, self._on_readable)
        else:
            self._loop.remove_reader(fd)

    def _watch_writable(self) -> None:
        fd = self.outbound.fd
        if fd is not None and not self._loop.has_writer(fd):
            self._loop.add_writer(fd, self._on_writable)

    def _stop_write_watch(self) -> None:
        fd = self.outbound.fd
        if fd is not None:
            self._loop.remove_writer(fd)

    def _count_error(self, err: PipeError, count: int) -> None:
        logger.warning("%s (%d/%d)", err, count, self._max_io_errors)
        if count >= self._max_io_errors:
            self._report_fault(f"{err} ({count} consecutive failures)")

    def _report_fault(self, reason: str) -> None:
        if self._fault_pending:
            return
        self._fault_pending = True
        self._stop_write_watch()
        self._loop.call_soon(self._deliver_fault, self._generation, reason)

    def _deliver_fault(self, generation: int, reason: str) -> None:
        # Drop faults raised against pipes that have since been closed or reopened.
        if generation != self._generation:
            logger.debug("Ignoring stale fifo fault: %s", reason)
            return
        self._on_fault(reason)
