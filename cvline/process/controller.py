"""
process/controller.py
---------------------
Spawns and watches the external detector process.

The detector's stdout and stderr are registered with the dispatch loop, split
into lines and handed to ``on_line(line, stream)``. When both streams reach
EOF the controller polls for the exit status and reports it through
``on_error(code, returncode)``. An intentional :meth:`ProcessController.stop`
never fires ``on_error``.
"""

from __future__ import annotations

import codecs
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from cvline.core.config import DetectorConfig
from cvline.core.exceptions import ProcessLaunchError
from cvline.core.loop import EventLoop
from cvline.core.models import ProcessErrorCode

logger = logging.getLogger(__name__)

LineHandler = Callable[[str, str], None]
ErrorHandler = Callable[[ProcessErrorCode, Optional[int]], None]

STDOUT = "stdout"
STDERR = "stderr"

_CHUNK = 4096

_utf8_decoder = codecs.getincrementaldecoder("utf-8")


@dataclass
class ProcessHandle:
    """What the controller knows about the current detector process."""

    executable: Path
    working_dir: Path
    args: list[str]
    running: bool = False
    pid: Optional[int] = None
    returncode: Optional[int] = None
    last_output: str = ""
    popen: Optional[subprocess.Popen] = field(default=None, repr=False)


class ProcessController:
    """Owns the detector's lifetime and turns its output into callbacks."""

    def __init__(
        self,
        config: DetectorConfig,
        loop: EventLoop,
        on_line: LineHandler,
        on_error: ErrorHandler,
        terminate_timeout_s: float = 2.0,
        exit_poll_interval_s: float = 0.1,
    ) -> None:
        self._cfg = config
        self._loop = loop
        self._on_line = on_line
        self._on_error = on_error
        self._terminate_timeout_s = terminate_timeout_s
        self._exit_poll_interval_s = exit_poll_interval_s

        executable = Path(config.binary).absolute()
        self._handle = ProcessHandle(
            executable=executable,
            working_dir=executable.parent,
            args=config.argument_list(),
        )
        self._streams: dict[int, str] = {}
        self._partial: dict[str, str] = {}
        self._decoders: dict[str, codecs.IncrementalDecoder] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Spawn the detector. Stops a previous instance first.

        Raises:
            ProcessLaunchError: Binary missing or the OS refused to spawn it.
        """
        if self._handle.popen is not None:
            if self.is_running():
                logger.info("Detector already running (pid %s); restarting", self._handle.pid)
            self.stop()

        h = self._handle
        if not h.executable.is_file():
            raise ProcessLaunchError(f"Detector binary not found: {h.executable}")

        logger.info("Starting detector %s %s in %s", h.executable, " ".join(h.args), h.working_dir)
        try:
            proc = subprocess.Popen(
                [str(h.executable), *h.args],
                cwd=str(h.working_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as exc:
            raise ProcessLaunchError(
                f"Cannot launch detector {h.executable} in {h.working_dir}: {exc}"
            ) from exc

        h.popen = proc
        h.pid = proc.pid
        h.running = True
        h.returncode = None
        self._partial = {STDOUT: "", STDERR: ""}
        self._decoders = {s: _utf8_decoder(errors="replace") for s in (STDOUT, STDERR)}
        for stream, pipe in ((STDOUT, proc.stdout), (STDERR, proc.stderr)):
            fd = pipe.fileno()
            os.set_blocking(fd, False)
            self._streams[fd] = stream
            self._loop.add_reader(fd, self._make_reader(proc, fd))
        logger.info("Detector started (pid %d), waiting for it to initialise", proc.pid)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Terminate the detector (SIGTERM, then SIGKILL). Idempotent."""
        proc = self._handle.popen
        self._detach_streams()
        if proc is None:
            return

        self._handle.popen = None
        if proc.poll() is None:
            wait_s = self._terminate_timeout_s if timeout is None else timeout
            proc.terminate()
            try:
                proc.wait(timeout=wait_s)
            except subprocess.TimeoutExpired:
                logger.warning("Detector pid %d did not terminate, killing", proc.pid)
                proc.kill()
                proc.wait()
        self._close_pipes(proc)
        self._handle.running = False
        self._handle.returncode = proc.returncode
        logger.info("Detector pid %d stopped (returncode %s)", proc.pid, proc.returncode)

    def is_running(self) -> bool:
        proc = self._handle.popen
        return proc is not None and proc.poll() is None

    @property
    def handle(self) -> ProcessHandle:
        return self._handle

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self.is_running() else None

    # ------------------------------------------------------------------
    # Output handling (loop thread)
    # ------------------------------------------------------------------

    def _make_reader(self, proc: subprocess.Popen, fd: int) -> Callable[[], None]:
        def _on_readable() -> None:
            self._read_stream(proc, fd)
        return _on_readable

    def _read_stream(self, proc: subprocess.Popen, fd: int) -> None:
        stream = self._streams.get(fd)
        if stream is None or proc is not self._handle.popen:
            return
        try:
            data = os.read(fd, _CHUNK)
        except BlockingIOError:
            return
        except OSError as exc:
            logger.warning("Detector %s read failed: %s", stream, exc)
            data = b""

        if not data:
            self._loop.remove_reader(fd)
            del self._streams[fd]
            tail = self._partial.pop(stream, "") + self._decode(stream, b"", final=True)
            if tail.strip():
                self._deliver(tail, stream)
            if not self._streams:
                self._check_exit(proc)
            return

        text = self._partial.get(stream, "") + self._decode(stream, data)
        *lines, self._partial[stream] = text.split("\n")
        for line in lines:
            self._deliver(line.rstrip("\r"), stream)
            # A handler may have stopped the process mid-batch.
            if proc is not self._handle.popen:
                return

    def _decode(self, stream: str, data: bytes, final: bool = False) -> str:
        decoder = self._decoders.get(stream)
        if decoder is None:
            return data.decode("utf-8", errors="replace")
        return decoder.decode(data, final)

    def _deliver(self, line: str, stream: str) -> None:
        self._handle.last_output = line
        self._on_line(line, stream)

    def _check_exit(self, proc: subprocess.Popen) -> None:
        if proc is not self._handle.popen:
            return
        rc = proc.poll()
        if rc is None:
            # Streams closed but the process lingers; keep polling.
            self._loop.call_later(self._exit_poll_interval_s, self._check_exit, proc)
            return

        self._handle.popen = None
        self._handle.running = False
        self._handle.returncode = rc
        self._close_pipes(proc)
        code = ProcessErrorCode.EXITED if rc == 0 else ProcessErrorCode.CRASHED
        logger.warning("Detector pid %d %s (returncode %d)", proc.pid, code.value, rc)
        self._on_error(code, rc)

    def _detach_streams(self) -> None:
        for fd in list(self._streams):
            self._loop.remove_reader(fd)
        self._streams.clear()
        self._partial.clear()
        self._decoders.clear()

    @staticmethod
    def _close_pipes(proc: subprocess.Popen) -> None:
        for pipe in (proc.stdout, proc.stderr):
            if pipe is not None and not pipe.closed:
                pipe.close()
