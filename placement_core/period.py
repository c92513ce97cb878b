"""
placement_core/period.py
────────────────────────
Human-friendly duration strings: "500ms", "30s", "10m", "1h", "2d".

Failover intervals, backoff caps and stickiness windows are all configured
as periods. Operators type them on the command line and in environment
variables, so the parser accepts the compact "<number><unit>" form rather
than ISO-8601.
"""

from __future__ import annotations

import re
from datetime import timedelta

_PERIOD_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h|d)$")

_UNIT_MS = {
    "ms": 1,
    "s": 1_000,
    "m": 60_000,
    "h": 3_600_000,
    "d": 86_400_000,
}


def parse_period(value: str) -> timedelta:
    """
    Parse a period string into a timedelta.

    Examples:
        parse_period("1s")   → timedelta(seconds=1)
        parse_period("10m")  → timedelta(minutes=10)
        parse_period("0s")   → timedelta(0)

    Raises:
        ValueError: if the string is not "<number><unit>".
    """
    match = _PERIOD_RE.match(value.strip())
    if match is None:
        raise ValueError(f"invalid period {value!r}, expected <number><ms|s|m|h|d>")
    amount, unit = match.groups()
    return timedelta(milliseconds=float(amount) * _UNIT_MS[unit])


def format_period(delta: timedelta) -> str:
    """Render a timedelta using the largest unit that divides it exactly."""
    ms = int(round(delta.total_seconds() * 1000))
    for unit in ("d", "h", "m", "s"):
        if ms and ms % _UNIT_MS[unit] == 0:
            return f"{ms // _UNIT_MS[unit]}{unit}"
    return f"{ms}ms" if ms else "0s"
