"""
protocol/records.py
-------------------
Line protocol spoken by the detector on its output FIFO.

One record per line, whitespace-separated, tag first:

    loc: <x> <angle> <mass>
    hsv: <hue> <hueTol> <sat> <satTol> <val> <valTol>

``loc:`` updates the supervisor's reading. ``hsv:`` reports the detector's
calibration window; the supervisor answers with an ``hsv`` command whose
tolerances are multiplied by the configured tolerance factor.
"""

from __future__ import annotations

from typing import Union

from cvline.core.exceptions import MalformedRecord
from cvline.core.models import HsvWindow, LineLocation

LOCATION_TAG = "loc:"
HSV_TAG = "hsv:"

DETECT_COMMAND = "detect"
HSV_COMMAND = "hsv"

Record = Union[LineLocation, HsvWindow]


def parse_record(line: str) -> Record | None:
    """Parse one record.

    Returns:
        :class:`LineLocation`, :class:`HsvWindow`, or ``None`` for blank lines
        and unknown tags.

    Raises:
        MalformedRecord: Known tag with too few or non-integer fields.
    """
    fields = line.split()
    if not fields:
        return None

    tag = fields[0]
    if tag == LOCATION_TAG:
        x, angle, mass = _int_fields(line, fields[1:], 3)
        return LineLocation(x=x, angle=angle, mass=mass)

    if tag == HSV_TAG:
        values = _int_fields(line, fields[1:], 6)
        return HsvWindow(*values)

    return None


def format_hsv_command(window: HsvWindow, tolerance_factor: float) -> str:
    """Build the ``hsv`` command echoed back for *window*.

    >>> format_hsv_command(HsvWindow(10, 5, 20, 6, 30, 7), 2.0)
    'hsv 10 10 20 12 30 14'
    """
    hue_tol, sat_tol, val_tol = window.scaled(tolerance_factor)
    parts = [
        HSV_COMMAND,
        str(window.hue),
        _fmt(hue_tol),
        str(window.saturation),
        _fmt(sat_tol),
        str(window.value),
        _fmt(val_tol),
    ]
    return " ".join(parts)


def split_records(payload: str) -> tuple[list[str], str]:
    """Split *payload* on newlines.

    Returns the complete, non-empty records and the unterminated tail (empty
    if *payload* ended with a newline).
    """
    *complete, tail = payload.split("\n")
    records = [r.rstrip("\r") for r in complete]
    return [r for r in records if r.strip()], tail


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _int_fields(line: str, fields: list[str], count: int) -> list[int]:
    if len(fields) < count:
        raise MalformedRecord(line, f"expected {count} fields, got {len(fields)}")
    try:
        return [int(f) for f in fields[:count]]
    except ValueError as exc:
        raise MalformedRecord(line, "non-integer field") from exc


def _fmt(value: float) -> str:
    # %g drops the trailing ".0" on whole numbers: 10.0 -> "10", 7.5 -> "7.5"
    return f"{value:g}"
