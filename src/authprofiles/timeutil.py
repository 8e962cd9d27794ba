"""Epoch-millisecond clock helpers and duration parsing/formatting.

Every timestamp in the store is an integer number of milliseconds since the
Unix epoch. Components take an injectable ``clock`` callable (defaulting to
:func:`now_ms`) so tests can pin time.
"""

from __future__ import annotations

import re
import time
from typing import Callable, Optional

MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR

Clock = Callable[[], int]

_UNIT_MS = {
    "ms": 1,
    "s": MS_PER_SECOND,
    "m": MS_PER_MINUTE,
    "h": MS_PER_HOUR,
    "d": MS_PER_DAY,
}

_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)(ms|s|m|h|d)?$")


def now_ms() -> int:
    """Return the current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def parse_duration_ms(raw: str, default_unit: str = "ms") -> int:
    """Parse a duration such as ``"365d"``, ``"12h"``, ``"30m"`` or ``"1500"``.

    Args:
        raw: The duration string. A bare number uses *default_unit*.
        default_unit: One of ``ms``, ``s``, ``m``, ``h``, ``d``.

    Returns:
        The duration in milliseconds.

    Raises:
        ValueError: If *raw* is empty, negative, or has an unknown unit.
    """
    if default_unit not in _UNIT_MS:
        raise ValueError(f"Unknown default unit: {default_unit}")
    text = raw.strip().lower()
    match = _DURATION_RE.match(text)
    if not match:
        raise ValueError(f"Invalid duration: {raw!r}")
    value = float(match.group(1))
    unit = match.group(2) or default_unit
    ms = int(round(value * _UNIT_MS[unit]))
    if ms <= 0:
        raise ValueError(f"Duration must be positive: {raw!r}")
    return ms


def format_remaining_short(remaining_ms: Optional[int]) -> str:
    """Render a remaining duration compactly for diagnostics.

    ``None`` renders as ``"unknown"``; anything at or below zero as ``"0m"``.
    Under an hour renders in minutes, under two days in hours, otherwise in
    days.
    """
    if remaining_ms is None:
        return "unknown"
    if remaining_ms <= 0:
        return "0m"
    minutes = max(1, round(remaining_ms / MS_PER_MINUTE))
    if minutes < 60:
        return f"{minutes}m"
    hours = round(minutes / 60)
    if hours < 48:
        return f"{hours}h"
    days = round(hours / 24)
    return f"{days}d"
