"""
conftest.py
-----------
Shared pytest fixtures for the cvline test suite.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from cvline.core.bus import TOPIC_STATE
from cvline.core.config import AppConfig, DetectorConfig, SupervisorConfig
from cvline.core.exceptions import ProcessLaunchError
from cvline.core.loop import EventLoop
from cvline.core.models import ProcessErrorCode, ReadinessState
from cvline.supervisor.supervisor import LineDetectorSupervisor


# ---------------------------------------------------------------------------
# Detector side of the FIFOs
# ---------------------------------------------------------------------------

class DetectorPeer:
    """Plays the detector's end of both FIFOs from inside the test."""

    def __init__(self, inbound: Path, outbound: Path) -> None:
        self.inbound = inbound      # detector writes here
        self.outbound = outbound    # detector reads commands here
        self._cmd_fd: int | None = None
        self._evt_fd: int | None = None
        self._buf = ""

    def listen(self) -> None:
        """Open the command FIFO for reading so the supervisor's writer can attach."""
        if self._cmd_fd is None:
            self._cmd_fd = os.open(self.outbound, os.O_RDONLY | os.O_NONBLOCK)

    def connect(self) -> None:
        """Open the event FIFO for writing. The supervisor must be reading it."""
        if self._evt_fd is None:
            self._evt_fd = os.open(self.inbound, os.O_WRONLY | os.O_NONBLOCK)

    def send(self, *lines: str) -> None:
        self.send_raw("".join(line + "\n" for line in lines).encode())

    def send_raw(self, data: bytes) -> None:
        assert self._evt_fd is not None, "connect() first"
        os.write(self._evt_fd, data)

    def commands(self) -> list[str]:
        """Every complete command line received since the last call."""
        assert self._cmd_fd is not None, "listen() first"
        while True:
            try:
                chunk = os.read(self._cmd_fd, 4096)
            except BlockingIOError:
                break
            if not chunk:
                break
            self._buf += chunk.decode()
        *lines, self._buf = self._buf.split("\n")
        return lines

    def read_some(self, n: int) -> None:
        """Take *n* raw bytes off the command FIFO, as a slow detector would."""
        assert self._cmd_fd is not None, "listen() first"
        self._buf += os.read(self._cmd_fd, n).decode(errors="replace")

    def hang_up(self) -> None:
        if self._evt_fd is not None:
            os.close(self._evt_fd)
            self._evt_fd = None

    def stop_listening(self) -> None:
        if self._cmd_fd is not None:
            os.close(self._cmd_fd)
            self._cmd_fd = None

    def close(self) -> None:
        self.hang_up()
        self.stop_listening()


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fifo_pair(tmp_path) -> tuple[Path, Path]:
    """(inbound, outbound) FIFOs in a temp directory."""
    inbound = tmp_path / "detector.out.fifo"
    outbound = tmp_path / "detector.in.fifo"
    os.mkfifo(inbound)
    os.mkfifo(outbound)
    return inbound, outbound


@pytest.fixture
def peer(fifo_pair):
    p = DetectorPeer(*fifo_pair)
    yield p
    p.close()


@pytest.fixture
def loop():
    lp = EventLoop(name="test-loop")
    yield lp
    lp.close()


@pytest.fixture
def app_config(tmp_path, fifo_pair) -> AppConfig:
    """Fast retries, no startup probe, tolerance factor 2.0."""
    inbound, outbound = fifo_pair
    return AppConfig(
        detector=DetectorConfig(
            binary=str(tmp_path / "bin" / "detector"),
            inbound_fifo=str(inbound),
            outbound_fifo=str(outbound),
            tolerance_factor=2.0,
        ),
        supervisor=SupervisorConfig(
            open_retry_interval_s=0.01,
            open_retry_limit=20,
            startup_probe_delay_s=0,
            terminate_timeout_s=1.0,
            exit_poll_interval_s=0.01,
        ),
    )


# ---------------------------------------------------------------------------
# Supervisor with a scripted detector process
# ---------------------------------------------------------------------------

class FakeController:
    """Stands in for ProcessController; the test drives its callbacks."""

    def __init__(self, config, loop, on_line, on_error, terminate_timeout_s=2.0, exit_poll_interval_s=0.1):
        self.on_line = on_line
        self.on_error = on_error
        self.starts = 0
        self.stops = 0
        self.running = False
        self.fail_next_start = False

    def start(self):
        if self.fail_next_start:
            self.fail_next_start = False
            raise ProcessLaunchError("Detector binary not found: /nowhere")
        if self.running:
            self.stop()
        self.starts += 1
        self.running = True

    def stop(self, timeout=None):
        if self.running:
            self.stops += 1
        self.running = False

    def is_running(self):
        return self.running

    @property
    def pid(self):
        return 4242 if self.running else None

    # test helpers
    def say(self, line, stream="stdout"):
        self.on_line(line, stream)

    def crash(self, returncode=-11):
        self.running = False
        self.on_error(ProcessErrorCode.CRASHED, returncode)


class SupervisorRig:
    """Supervisor on a hand-pumped loop, a fake controller and a FIFO peer."""

    serving_line = "Entering video thread loop"

    def __init__(self, config: AppConfig, loop: EventLoop, peer: DetectorPeer) -> None:
        self.loop = loop
        self.peer = peer
        self.controllers: list[FakeController] = []
        self.states: list[ReadinessState] = []

        def factory(*args, **kwargs):
            c = FakeController(*args, **kwargs)
            self.controllers.append(c)
            return c

        self.sup = LineDetectorSupervisor(config, loop=loop, controller_factory=factory)
        self.sup.bus.subscribe(TOPIC_STATE, self.states.append)

    @property
    def ctrl(self) -> FakeController:
        return self.controllers[0]

    def pump(self, timeout: float = 0.05) -> None:
        self.loop.run_until(lambda: False, timeout=timeout)

    def wait(self, predicate, timeout: float = 2.0) -> bool:
        return self.loop.run_until(predicate, timeout=timeout)

    def bring_up(self) -> None:
        self.sup.ensure_initialized()
        self.loop.run_once()
        assert self.sup.state is ReadinessState.AWAITING_PROCESS_SIGNAL
        self.peer.listen()
        self.ctrl.say(self.serving_line)
        assert self.sup.state is ReadinessState.READY
        self.peer.connect()


@pytest.fixture
def make_rig(app_config, loop, peer):
    """Builds rigs from ``app_config`` as it stands when called."""
    rigs: list[SupervisorRig] = []

    def _make() -> SupervisorRig:
        r = SupervisorRig(app_config, loop, peer)
        rigs.append(r)
        return r

    yield _make
    for r in rigs:
        r.sup.close()


@pytest.fixture
def rig(make_rig) -> SupervisorRig:
    return make_rig()
