"""
Units
=====

Parsing of human-entered sizes ("8GiB") and durations ("5m"), and the
reverse: rendering byte counts and second counts for log output.
All size suffixes are binary (powers of 1024), whatever their spelling.
"""

from __future__ import annotations
import re

from .errors import ConfigurationError

_KiB = 1024

SIZE_SUFFIXES: dict[str, int] = {
    "":    1,
    "b":   1,
    "k":   _KiB,      "kb": _KiB,      "kib": _KiB,
    "m":   _KiB ** 2, "mb": _KiB ** 2, "mib": _KiB ** 2,
    "g":   _KiB ** 3, "gb": _KiB ** 3, "gib": _KiB ** 3,
    "t":   _KiB ** 4, "tb": _KiB ** 4, "tib": _KiB ** 4,
    "p":   _KiB ** 5, "pb": _KiB ** 5, "pib": _KiB ** 5,
}

DURATION_SUFFIXES: dict[str, int] = {
    "":  1,
    "s": 1, "sec": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hour": 3600, "hours": 3600,
    "d": 86400, "day": 86400, "days": 86400,
}

_QUANTITY = re.compile(r"^\s*(\d+)\s*([a-zA-Z]*)\s*$")

_SIZE_NAMES     = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")
_DURATION_UNITS = (("day(s)", 86400), ("hour(s)", 3600), ("minute(s)", 60), ("second(s)", 1))


def _parse_quantity(text: str, table: dict[str, int], kind: str) -> int:
    match = _QUANTITY.match(text)
    if not match:
        raise ConfigurationError(f"invalid {kind} {text!r}")
    number, suffix = match.groups()
    multiplier = table.get(suffix.lower())
    if multiplier is None:
        raise ConfigurationError(f"invalid {kind} suffix {suffix!r} in {text!r}")
    return int(number) * multiplier


def parse_size(text: str) -> int:
    """'512MiB' -> 536870912. Bare numbers are bytes."""
    return _parse_quantity(text, SIZE_SUFFIXES, "size")


def parse_duration(text: str) -> int:
    """'2h' -> 7200. Bare numbers are seconds."""
    return _parse_quantity(text, DURATION_SUFFIXES, "duration")


def readable_size(value: int) -> str:
    scaled = float(value)
    unit = 0
    while unit < len(_SIZE_NAMES) - 1 and scaled / 1024 > 1000:
        scaled /= 1024
        unit += 1
    return f"{round(scaled)}{_SIZE_NAMES[unit]}"


def readable_duration(seconds: float) -> str:
    remaining = int(seconds)
    parts: list[str] = []
    for name, span in _DURATION_UNITS:
        amount, remaining = divmod(remaining, span)
        # Leading zero units are dropped, inner ones kept: "1 hour(s), 0 minute(s), 5 second(s)"
        if amount or parts:
            parts.append(f"{amount} {name}")
    return ", ".join(parts) if parts else "0 second"
