"""Delay parsing: turn "20ms", "1.5 minutes", 250 or a timedelta into a due time.

Duration strings follow the vercel/ms grammar so instances written in other
languages agree on what "0.01s" means: a decimal number, optional
whitespace, optional unit. A bare number is milliseconds.

Tags:
    delay, duration, parsing, hatimer
"""

from __future__ import annotations

import math
import re
import time
from datetime import timedelta
from numbers import Real

from hatimer.errors import InvalidDelayError

Delay = float | int | str | timedelta

_SECOND = 1000.0
_MINUTE = _SECOND * 60
_HOUR = _MINUTE * 60
_DAY = _HOUR * 24
_WEEK = _DAY * 7
_YEAR = _DAY * 365.25

_UNITS: dict[str, float] = {}
for _names, _factor in (
    (("years", "year", "yrs", "yr", "y"), _YEAR),
    (("weeks", "week", "w"), _WEEK),
    (("days", "day", "d"), _DAY),
    (("hours", "hour", "hrs", "hr", "h"), _HOUR),
    (("minutes", "minute", "mins", "min", "m"), _MINUTE),
    (("seconds", "second", "secs", "sec", "s"), _SECOND),
    (("milliseconds", "millisecond", "msecs", "msec", "ms"), 1.0),
):
    for _name in _names:
        _UNITS[_name] = _factor

_DURATION_RE = re.compile(r"^(?P<value>-?(?:\d+)?\.?\d+)\s*(?P<unit>[a-z]+)?$", re.IGNORECASE)
_MAX_DURATION_LENGTH = 100


def parse_duration(text: str) -> float:
    """Parse a duration string into milliseconds.

    >>> parse_duration("20ms")
    20.0
    >>> parse_duration("0.01s")
    10.0
    >>> parse_duration("2 Hours")
    7200000.0

    Raises:
        InvalidDelayError: Malformed string or unknown unit.
    """
    stripped = text.strip()
    if not stripped or len(stripped) > _MAX_DURATION_LENGTH:
        raise InvalidDelayError(text)

    match = _DURATION_RE.match(stripped)
    if match is None:
        raise InvalidDelayError(text)

    unit = (match.group("unit") or "ms").lower()
    factor = _UNITS.get(unit)
    if factor is None:
        raise InvalidDelayError(text, f"Unknown duration unit {unit!r} in {text!r}")

    return float(match.group("value")) * factor


def parse_delay(delay: Delay) -> float:
    """Resolve any accepted delay form to a finite, non-negative millisecond count.

    Raises:
        InvalidDelayError: Unparseable, NaN, infinite, negative, or of an
            unsupported type (booleans included).
    """
    if isinstance(delay, bool):
        raise InvalidDelayError(delay)

    if isinstance(delay, str):
        millis = parse_duration(delay)
    elif isinstance(delay, timedelta):
        millis = delay.total_seconds() * _SECOND
    elif isinstance(delay, Real):
        millis = float(delay)
    else:
        raise InvalidDelayError(delay, f"Unsupported delay type {type(delay).__name__}")

    if not math.isfinite(millis):
        raise InvalidDelayError(delay)
    if millis < 0:
        raise InvalidDelayError(delay, f"Delay must not be negative: {delay!r}")
    return millis


def now_ms() -> float:
    """Current wall-clock time in milliseconds since the epoch."""
    return time.time() * _SECOND


def resolve_due_at(delay: Delay, now: float | None = None) -> float:
    """Absolute due timestamp (ms since epoch) for ``delay`` from ``now``."""
    offset = parse_delay(delay)
    return (now_ms() if now is None else now) + offset


__all__ = ["Delay", "parse_duration", "parse_delay", "now_ms", "resolve_due_at"]
