"""tests/integration/test_supervisor_end_to_end.py — Supervisor against a real detector process.

The detector is ``fake_detector.py`` installed as an executable, so process
launch, console sentinels, both FIFOs and restarts are all exercised for real.
"""

from __future__ import annotations

import logging
import os
import stat
import sys
import time
from pathlib import Path

import pytest

from cvline.core.models import ReadinessState
from cvline.supervisor.supervisor import LineDetectorSupervisor

pytestmark = pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="needs POSIX FIFOs")

FAKE_DETECTOR = Path(__file__).with_name("fake_detector.py")


def install_fake_detector(directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    binary = directory / "fake-detector"
    source = FAKE_DETECTOR.read_text(encoding="utf-8")
    binary.write_text(f"#!{sys.executable}\n" + source, encoding="utf-8")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR)
    return binary


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def logged_commands(log_path: Path) -> list[str]:
    if not log_path.exists():
        return []
    return log_path.read_text(encoding="utf-8").splitlines()


@pytest.fixture
def command_log(tmp_path) -> Path:
    return tmp_path / "commands.log"


@pytest.fixture
def make_supervisor(app_config, tmp_path, command_log):
    created = []

    def _make(extra_args: str = "") -> LineDetectorSupervisor:
        binary = install_fake_detector(tmp_path / "bin")
        det = app_config.detector
        det.binary = str(binary)
        det.args = f"{det.inbound_fifo} {det.outbound_fifo} --log {command_log} --x 42 {extra_args}".strip()
        # interpreter start-up is slow next to the retry interval
        app_config.supervisor.open_retry_limit = 500
        sup = LineDetectorSupervisor(app_config)
        sup.start()
        created.append(sup)
        return sup

    yield _make
    for sup in created:
        sup.close()


class TestEndToEnd:
    def test_detection_reading(self, make_supervisor, command_log):
        sup = make_supervisor()
        sup.request_detection()
        assert wait_until(lambda: sup.current_reading() == 42)
        assert sup.state is ReadinessState.READY
        assert sup.last_location.mass == 100
        assert logged_commands(command_log) == ["detect"]

    def test_hsv_calibration_echoed(self, make_supervisor, command_log):
        sup = make_supervisor("--hsv 10,5,20,6,30,7")
        sup.ensure_initialized()
        assert wait_until(lambda: "hsv 10 10 20 12 30 14" in logged_commands(command_log))

    def test_detector_stderr_is_logged(self, make_supervisor, caplog):
        with caplog.at_level(logging.INFO, logger="cvline.detector"):
            sup = make_supervisor()
            sup.ensure_initialized()
            assert wait_until(lambda: "fake detector warming up" in caplog.text)

    def test_restart_after_detector_terminates(self, make_supervisor, command_log):
        sup = make_supervisor()
        sup.request_detection()
        assert wait_until(lambda: sup.current_reading() == 42)

        sup.submit("quit")
        assert wait_until(lambda: sup.state is ReadinessState.FAULTED)

        sup.request_detection()
        assert wait_until(lambda: logged_commands(command_log).count("detect") == 2)
        assert logged_commands(command_log) == ["detect", "quit", "detect"]
        assert sup.status().restarts == 1

    def test_close_terminates_detector(self, make_supervisor):
        sup = make_supervisor()
        sup.ensure_initialized()
        assert sup.wait_for_state(ReadinessState.READY, 10.0)
        pid = sup.status().pid
        assert pid is not None

        sup.close()
        assert sup.state is ReadinessState.UNINITIALIZED
        assert not sup.status().process_running
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
