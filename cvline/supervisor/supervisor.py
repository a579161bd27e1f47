"""
supervisor/supervisor.py
------------------------
LineDetectorSupervisor: drives the external line detector through its FIFOs.

  ensure_initialized() / request_detection()          (any thread)
    → EventLoop.call_soon                              (marshalled)
    → readiness state machine                          (loop thread)
        UNINITIALIZED / FAULTED  → start detector process
        AWAITING_PROCESS_SIGNAL  → wait for SERVING signal (or startup probe)
        OPENING_PIPES            → open FIFOs, retry on a timer
        READY                    → flush command queue

Console output, process exit, FIFO reads and timers all arrive on the same
loop thread, so the state, the command queue and both pipe handles are only
ever touched by one thread and need no lock. ``current_reading()`` is a
plain attribute read and is safe from any thread.

No exception crosses this class's public methods: launch failures, crashes
and pipe errors are logged and show up as ``ReadinessState.FAULTED`` (or a
stay in ``OPENING_PIPES``), which callers tolerate because commands are
queued until the channel is back.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from cvline.core.bus import (
    TOPIC_CALIBRATION,
    TOPIC_CONSOLE,
    TOPIC_LOCATION,
    TOPIC_STATE,
    DataBus,
)
from cvline.core.config import AppConfig
from cvline.core.exceptions import MalformedRecord, PipeOpenError, ProcessCrash, ProcessLaunchError
from cvline.core.loop import EventLoop, TimerHandle
from cvline.core.models import (
    HsvWindow,
    LineLocation,
    ProcessErrorCode,
    ReadinessState,
    SupervisorStatus,
)
from cvline.pipes.manager import PipeManager
from cvline.process.controller import STDERR, ProcessController
from cvline.process.signals import ProcessSignal, SentinelSignalSource, SignalSource
from cvline.protocol.records import DETECT_COMMAND, format_hsv_command, parse_record
from cvline.supervisor.command_queue import CommandQueue

logger = logging.getLogger(__name__)
detector_log = logging.getLogger("cvline.detector")

ControllerFactory = Callable[..., ProcessController]


class LineDetectorSupervisor:
    """Owns the detector process, both FIFOs, the readiness state and the queue."""

    def __init__(
        self,
        config: AppConfig,
        loop: Optional[EventLoop] = None,
        bus: Optional[DataBus] = None,
        signals: Optional[SignalSource] = None,
        controller_factory: ControllerFactory = ProcessController,
    ) -> None:
        """
        Args:
            config:             Validated application config.
            loop:               Dispatch loop to run on. If omitted the
                                supervisor creates one, runs it on its own
                                thread from :meth:`start` and closes it in
                                :meth:`close`.
            bus:                Where state changes and readings are published.
            signals:            Console-line classifier; defaults to the
                                configured sentinel lines.
            controller_factory: Builds the process controller. Called with
                                the same arguments as :class:`ProcessController`.
        """
        self._cfg = config
        self._sup_cfg = config.supervisor
        self._owns_loop = loop is None
        self._loop = loop or EventLoop(name="cvline-supervisor")
        self._bus = bus or DataBus()
        self._signals = signals or SentinelSignalSource(
            self._sup_cfg.serving_sentinel, self._sup_cfg.terminating_sentinel
        )
        self._tolerance_factor = float(config.detector.tolerance_factor)

        self._controller = controller_factory(
            config.detector,
            self._loop,
            on_line=self._on_console_line,
            on_error=self._on_process_error,
            terminate_timeout_s=self._sup_cfg.terminate_timeout_s,
            exit_poll_interval_s=self._sup_cfg.exit_poll_interval_s,
        )
        self._pipes = PipeManager(
            config.detector.inbound_path(),
            config.detector.outbound_path(),
            self._loop,
            on_record=self._on_record,
            on_fault=self._on_pipe_fault,
            on_drained=self._flush,
            read_buffer_size=self._sup_cfg.read_buffer_size,
            max_io_errors=self._sup_cfg.max_io_errors,
        )
        self._queue = CommandQueue()

        self._state = ReadinessState.UNINITIALIZED
        self._state_cond = threading.Condition()
        self._reading = 0
        self._last_location: Optional[LineLocation] = None
        self._open_attempts = 0
        self._restarts = 0
        self._retry_timer: Optional[TimerHandle] = None
        self._probe_timer: Optional[TimerHandle] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Public API (any thread)
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the dispatch thread if this supervisor owns its loop."""
        if self._owns_loop:
            self._loop.start()

    def ensure_initialized(self) -> None:
        """Bring the channel up if it is not ready. Idempotent, never blocks."""
        self._post(self._ensure_ready)

    def request_detection(self) -> None:
        """Ask the detector for a new line position."""
        self.submit(DETECT_COMMAND)

    def submit(self, command: str) -> None:
        """Queue *command* for the detector and deliver it once ready."""
        self._post(self._submit, command)

    def current_reading(self) -> int:
        """Last detected line x offset (0 until the first ``loc:`` record)."""
        return self._reading

    @property
    def last_location(self) -> Optional[LineLocation]:
        return self._last_location

    @property
    def state(self) -> ReadinessState:
        return self._state

    @property
    def bus(self) -> DataBus:
        return self._bus

    @property
    def loop(self) -> EventLoop:
        return self._loop

    @property
    def tolerance_factor(self) -> float:
        return self._tolerance_factor

    def queued_commands(self) -> list[str]:
        return self._queue.pending()

    def status(self) -> SupervisorStatus:
        return SupervisorStatus(
            state=self._state,
            reading=self._reading,
            queued_commands=len(self._queue),
            process_running=self._controller.is_running(),
            pid=self._controller.pid,
            pipes_open=self._pipes.is_open,
            restarts=self._restarts,
        )

    def wait_for_state(self, state: ReadinessState, timeout: float) -> bool:
        """Block until the channel reaches *state*. Needs a running loop thread."""
        with self._state_cond:
            return self._state_cond.wait_for(lambda: self._state is state, timeout)

    def close(self) -> None:
        """Tear down: notifications off, FIFOs closed, detector terminated."""
        if self._closed:
            return
        self._closed = True

        if self._loop.is_running and not self._loop.in_loop_thread():
            done = threading.Event()

            def _shutdown_on_loop() -> None:
                try:
                    self._shutdown()
                finally:
                    done.set()

            self._loop.call_soon(_shutdown_on_loop)
            if not done.wait(self._sup_cfg.terminate_timeout_s + 5.0):
                logger.warning("Supervisor shutdown did not complete on the loop thread")
        else:
            self._shutdown()

        if self._owns_loop:
            self._loop.close()

    def __enter__(self) -> "LineDetectorSupervisor":
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # State machine (loop thread)
    # ------------------------------------------------------------------

    def _post(self, callback: Callable, *args: object) -> None:
        if self._closed:
            logger.debug("Supervisor closed; ignoring %s", getattr(callback, "__name__", callback))
            return
        self._loop.call_soon(callback, *args)

    def _submit(self, command: str) -> None:
        self._queue.enqueue(command)
        self._ensure_ready()
        self._flush()

    def _ensure_ready(self) -> None:
        """Re-verify readiness; the detector can die without telling us."""
        state = self._state

        if state is ReadinessState.READY:
            if self._pipes.is_open and self._pipes.paths_exist():
                return
            self._teardown("detector fifos disappeared while ready")
            self._start_process()
            return

        if state in (ReadinessState.STARTING_PROCESS, ReadinessState.AWAITING_PROCESS_SIGNAL):
            if self._controller.is_running():
                return
            logger.warning("Detector is gone before signalling readiness; restarting")
            self._start_process()
            return

        if state is ReadinessState.OPENING_PIPES:
            self._open_pipes()
            return

        # UNINITIALIZED or FAULTED: full (re)start.
        self._start_process()

    def _start_process(self) -> None:
        self._cancel_timers()
        if self._state is not ReadinessState.UNINITIALIZED:
            self._restarts += 1
        self._set_state(ReadinessState.STARTING_PROCESS)

        try:
            self._controller.start()
        except ProcessLaunchError as exc:
            self._teardown(exc)
            return

        self._set_state(ReadinessState.AWAITING_PROCESS_SIGNAL)
        self._arm_probe()

    def _arm_probe(self) -> None:
        delay = self._sup_cfg.startup_probe_delay_s
        if delay > 0:
            self._probe_timer = self._loop.call_later(delay, self._startup_probe)

    def _startup_probe(self) -> None:
        """Fallback for detectors whose serving line never reaches us."""
        self._probe_timer = None
        if self._state is not ReadinessState.AWAITING_PROCESS_SIGNAL:
            return
        if self._pipes.paths_exist():
            logger.info(
                "No serving signal after %.1fs but detector fifos exist; opening them",
                self._sup_cfg.startup_probe_delay_s,
            )
            self._open_pipes()
        elif self._controller.is_running():
            self._arm_probe()

    def _open_pipes(self) -> None:
        self._cancel_retry()
        if self._state is not ReadinessState.OPENING_PIPES:
            self._open_attempts = 0
            self._set_state(ReadinessState.OPENING_PIPES)

        self._open_attempts += 1
        try:
            self._pipes.open()
        except PipeOpenError as exc:
            limit = self._sup_cfg.open_retry_limit
            if self._open_attempts <= limit:
                logger.info("%s; retrying (attempt %d/%d)", exc, self._open_attempts, limit)
                self._retry_timer = self._loop.call_later(
                    self._sup_cfg.open_retry_interval_s, self._retry_open
                )
            else:
                logger.warning("%s; will retry on the next request", exc)
            return

        self._cancel_timers()
        self._open_attempts = 0
        self._set_state(ReadinessState.READY)
        logger.info("Detector channel initialisation completed")
        self._flush()

    def _retry_open(self) -> None:
        self._retry_timer = None
        if self._state is ReadinessState.OPENING_PIPES:
            self._open_pipes()

    def _flush(self) -> None:
        if self._state is not ReadinessState.READY or not self._queue:
            return
        if self._pipes.fault_pending:
            return
        sent = self._queue.drain(self._pipes.write)
        logger.debug("Flushed %d command(s), %d queued", sent, len(self._queue))

    def _teardown(
        self,
        reason: object,
        final_state: ReadinessState = ReadinessState.FAULTED,
        terminate: bool = False,
    ) -> None:
        """The one way down. Queued commands survive for the next restart."""
        self._cancel_timers()
        self._pipes.close()
        if terminate:
            self._controller.stop()
        if self._state is not final_state:
            log = logger.warning if final_state is ReadinessState.FAULTED else logger.info
            log("Detector channel down (%s), %d command(s) queued", reason, len(self._queue))
            self._set_state(final_state)

    def _shutdown(self) -> None:
        self._teardown("supervisor closed", final_state=ReadinessState.UNINITIALIZED, terminate=True)

    def _set_state(self, new: ReadinessState) -> None:
        old = self._state
        if old is new:
            return
        with self._state_cond:
            self._state = new
            self._state_cond.notify_all()
        logger.info("Detector channel: %s -> %s", old, new)
        self._bus.publish(TOPIC_STATE, new)

    def _cancel_retry(self) -> None:
        if self._retry_timer is not None:
            self._retry_timer.cancel()
            self._retry_timer = None

    def _cancel_timers(self) -> None:
        self._cancel_retry()
        if self._probe_timer is not None:
            self._probe_timer.cancel()
            self._probe_timer = None

    # ------------------------------------------------------------------
    # Callbacks (loop thread)
    # ------------------------------------------------------------------

    def _on_console_line(self, line: str, stream: str) -> None:
        self._bus.publish(TOPIC_CONSOLE, (stream, line))
        if stream == STDERR:
            detector_log.info("From detector standard error: %s", line)
            return
        detector_log.debug("From detector: %s", line)

        signal = self._signals.classify(line)
        if signal is ProcessSignal.SERVING:
            if self._state in (
                ReadinessState.AWAITING_PROCESS_SIGNAL,
                ReadinessState.OPENING_PIPES,
                ReadinessState.READY,
            ):
                self._open_pipes()
        elif signal is ProcessSignal.TERMINATING:
            self._teardown(ProcessCrash("detector reported termination"), terminate=True)

    def _on_process_error(self, code: ProcessErrorCode, returncode: Optional[int]) -> None:
        self._teardown(ProcessCrash(f"detector {code.value}, returncode {returncode}"))

    def _on_pipe_fault(self, reason: str) -> None:
        self._teardown(reason)

    def _on_record(self, record: str) -> None:
        try:
            parsed = parse_record(record)
        except MalformedRecord as exc:
            logger.warning("Dropping detector record: %s", exc)
            return

        if isinstance(parsed, LineLocation):
            # angle and mass are kept on last_location only
            self._last_location = parsed
            self._reading = parsed.x
            self._bus.publish(TOPIC_LOCATION, parsed)
        elif isinstance(parsed, HsvWindow):
            command = format_hsv_command(parsed, self._tolerance_factor)
            self._queue.enqueue(command)
            self._flush()
            self._bus.publish(TOPIC_CALIBRATION, command)
        else:
            logger.debug("Ignoring detector record %r", record)
