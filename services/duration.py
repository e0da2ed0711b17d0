"""
Duration Parsing

This module parses human-readable duration strings such as "300ms", "1.5s",
"1m" or "1h15m30s" into seconds, following the grammar of Go's
time.ParseDuration so that the same strings work against every echoserver
implementation:

- an optional leading sign
- one or more "<decimal number><unit>" terms
- units: ns, us, µs, μs, ms, s, m, h
- the bare string "0" is valid without a unit
"""

import re

# Nanoseconds per unit
_UNITS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,  # U+00B5 micro sign
    "μs": 1_000,  # U+03BC greek small letter mu
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}

# Durations are bounded by a signed 64-bit nanosecond count (about 292 years)
MAX_DURATION_NS = (1 << 63) - 1

_TERM = re.compile(r"([0-9]*)(?:\.([0-9]*))?([^0-9.]*)")


class DurationError(ValueError):
    """Raised when a duration string cannot be parsed."""


def parse_duration(value: str) -> float:
    """
    Parse a duration string and return its length in seconds.

    Args:
        value: Duration string, e.g. "10s", "1m", "-1.5h", "250ms"

    Returns:
        The duration in seconds (negative when the string is negative)

    Raises:
        DurationError: If the string does not follow the duration grammar or
            exceeds the 64-bit nanosecond range
    """
    original = value
    negative = False

    if value and value[0] in "+-":
        negative = value[0] == "-"
        value = value[1:]

    if value == "0":
        return 0.0
    if value == "":
        raise DurationError(f'time: invalid duration "{original}"')

    limit = MAX_DURATION_NS + 1 if negative else MAX_DURATION_NS
    total = 0
    position = 0
    while position < len(value):
        match = _TERM.match(value, position)
        whole, fraction, unit = match.groups()

        if not whole and not fraction:
            raise DurationError(f'time: invalid duration "{original}"')
        if not unit:
            raise DurationError(f'time: missing unit in duration "{original}"')
        if unit not in _UNITS:
            raise DurationError(f'time: unknown unit "{unit}" in duration "{original}"')

        whole = whole.lstrip("0")
        if len(whole) > 19:
            raise DurationError(f'time: invalid duration "{original}"')

        scale = _UNITS[unit]
        term = int(whole or "0") * scale
        if fraction:
            # Digits past the 30th cannot change a nanosecond count
            fraction = fraction[:30]
            term += int(int(fraction) * scale / 10 ** len(fraction))

        total += term
        if total > limit:
            raise DurationError(f'time: invalid duration "{original}"')
        position = match.end()

    seconds = total / 1e9
    return -seconds if negative else seconds


def format_duration(seconds: float) -> str:
    """Render seconds compactly for log output, e.g. 0.0123 -> "12.3ms"."""
    if seconds >= 1:
        return f"{seconds:g}s"
    if seconds >= 1e-3:
        return f"{seconds * 1e3:g}ms"
    return f"{seconds * 1e6:g}µs"
