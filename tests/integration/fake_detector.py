"""tests/integration/fake_detector.py — Stand-in for the camera line detector.

Installed as an executable by the integration tests. Speaks the detector's
FIFO protocol: announces itself on stdout, writes ``loc:`` records to the
events FIFO on every ``detect`` command and logs each command it receives.
"""

import os
import sys

import click


@click.command()
@click.argument("events_fifo")
@click.argument("commands_fifo")
@click.option("--log", "log_path", required=True, help="File that receives every command line.")
@click.option("--x", "x", default=42, help="x offset reported for every detect.")
@click.option("--hsv", default=None, help="Comma separated hsv record sent once at startup.")
@click.option("--no-sentinel", is_flag=True, help="Do not announce readiness on stdout.")
def main(events_fifo, commands_fifo, log_path, x, hsv, no_sentinel):
    for path in (events_fifo, commands_fifo):
        if not os.path.exists(path):
            os.mkfifo(path)

    if not no_sentinel:
        print("Entering video thread loop", flush=True)
    print("fake detector warming up", file=sys.stderr, flush=True)

    with open(events_fifo, "w", buffering=1) as events, open(commands_fifo) as commands:
        if hsv:
            events.write("hsv: " + " ".join(hsv.split(",")) + "\n")

        for line in commands:
            command = line.strip()
            with open(log_path, "a") as log:
                log.write(command + "\n")
            if command == "detect":
                events.write(f"loc: {x} 0 100\n")
            elif command == "quit":
                print("Terminating", flush=True)
                return


if __name__ == "__main__":
    main()
