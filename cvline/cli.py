"""
cli.py
------
Command-line interface for running the line detector supervisor headless.

Commands:
    cvline run     Start the detector and sample line positions
    cvline check   Validate the config and the detector's binary / FIFOs
"""

from __future__ import annotations

import logging
import sys
import time

import click
from tqdm import tqdm

from cvline.core.bus import TOPIC_STATE, QueuedSubscriber
from cvline.core.config import AppConfig, load_config
from cvline.core.exceptions import ConfigError
from cvline.core.models import ReadinessState
from cvline.pipes.handle import PipeHandle
from cvline.supervisor.supervisor import LineDetectorSupervisor


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%H:%M:%S",
    )


def _load(config_path: str | None) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


@click.group()
def main() -> None:
    """Camera line detector supervisor -- CLI."""


# ---------------------------------------------------------------------------
# cvline run
# ---------------------------------------------------------------------------

@main.command("run")
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML config (default: config/default.yaml).")
@click.option("--samples", default=100, show_default=True, help="Detection requests to issue (-1 = until Ctrl-C).")
@click.option("--interval", default=0.2, show_default=True, help="Seconds between detection requests.")
@click.option("--ready-timeout", default=10.0, show_default=True, help="Seconds to wait for the channel before sampling.")
@click.option("--log-level", default=None, help="Logging verbosity (default: from config).")
def run_cmd(config_path, samples, interval, ready_timeout, log_level):
    """Start the detector and print the line position it reports."""
    cfg = _load(config_path)
    _setup_logging(log_level or cfg.logging.log_level)

    supervisor = LineDetectorSupervisor(cfg)
    states = QueuedSubscriber()
    supervisor.bus.subscribe(TOPIC_STATE, states)

    click.echo(f"\nDetector  : {cfg.detector.binary} {cfg.detector.args}".rstrip())
    click.echo(f"Inbound   : {cfg.detector.inbound_fifo}")
    click.echo(f"Outbound  : {cfg.detector.outbound_fifo}\n")

    issued = 0
    readings: list[int] = []
    transitions: list[ReadinessState] = []
    try:
        supervisor.start()
        supervisor.ensure_initialized()
        if not supervisor.wait_for_state(ReadinessState.READY, ready_timeout):
            click.echo(f"  [WARN] channel not ready after {ready_timeout:.1f}s; requests will be queued")

        with tqdm(
            total=samples if samples > 0 else None,
            unit="req",
            dynamic_ncols=True,
        ) as pbar:
            while samples < 0 or issued < samples:
                supervisor.request_detection()
                issued += 1
                time.sleep(interval)

                reading = supervisor.current_reading()
                readings.append(reading)
                for state in states.drain():
                    transitions.append(state)
                    tqdm.write(f"  [state] {state}")
                pbar.set_postfix({"x": reading, "state": str(supervisor.state)})
                pbar.update(1)

    except KeyboardInterrupt:
        click.echo("\nInterrupted — shutting detector down...")
    except Exception:
        logging.exception("Fatal error")
        supervisor.close()
        sys.exit(1)

    status = supervisor.status()
    supervisor.close()

    click.echo("\n" + "=" * 60)
    click.echo(" RUN COMPLETE")
    click.echo("=" * 60)
    click.echo(f"  Requests issued  : {issued}")
    click.echo(f"  Last reading     : {status.reading}")
    if readings:
        click.echo(f"  Reading range    : {min(readings)} .. {max(readings)}")
    click.echo(f"  Final state      : {status.state}")
    click.echo(f"  Restarts         : {status.restarts}")
    faults = sum(1 for s in transitions if s is ReadinessState.FAULTED)
    if faults:
        click.echo(f"  [WARN] Faults    : {faults}")
    if status.queued_commands:
        click.echo(f"  [WARN] Undelivered: {status.queued_commands} command(s)")
    click.echo("")


# ---------------------------------------------------------------------------
# cvline check
# ---------------------------------------------------------------------------

@main.command("check")
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML config.")
def check_cmd(config_path):
    """Validate the config and report whether the detector can be started."""
    cfg = _load(config_path)
    det = cfg.detector

    binary = det.binary_path()
    binary_ok = binary.is_file()
    click.echo(f"\n  Binary           : {binary}  [{'ok' if binary_ok else 'MISSING'}]")
    click.echo(f"  Arguments        : {det.argument_list() or '(none)'}")
    click.echo(f"  Tolerance factor : {det.tolerance_factor:g}")

    for label, path in (("Inbound fifo", det.inbound_path()), ("Outbound fifo", det.outbound_path())):
        handle = PipeHandle(path, 0)
        if handle.is_fifo():
            status = "fifo"
        elif handle.exists():
            status = "NOT A FIFO"
        else:
            status = "absent (detector creates it)"
        click.echo(f"  {label:<17}: {path}  [{status}]")

    click.echo("")
    if not binary_ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
