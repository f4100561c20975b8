"""Human-readable byte sizes and durations for safex options."""

from __future__ import annotations

import re

_BYTE_UNITS = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "m": 1000**2,
    "mb": 1000**2,
    "g": 1000**3,
    "gb": 1000**3,
    "t": 1000**4,
    "tb": 1000**4,
    "ki": 1024,
    "kib": 1024,
    "mi": 1024**2,
    "mib": 1024**2,
    "gi": 1024**3,
    "gib": 1024**3,
    "ti": 1024**4,
    "tib": 1024**4,
}

_DURATION_UNITS = {
    "w": 7 * 86400.0,
    "d": 86400.0,
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|w|d|h|m|s)")

_BINARY_SUFFIXES = ("KiB", "MiB", "GiB", "TiB", "PiB")


def parse_byte_size(value: str) -> int:
    """
    Parse a size such as ``"8GiB"``, ``"512MB"`` or ``"1000"`` into bytes.

    SI suffixes (K, MB, ...) are powers of 1000; IEC suffixes (KiB, Mi, ...)
    are powers of 1024. Suffixes are case-insensitive.

    Raises:
        ValueError: If the value is malformed or uses an unknown unit
    """
    match = _SIZE_RE.match(value)
    if not match:
        raise ValueError(f"Invalid byte size: {value!r}")
    number, unit = match.groups()
    multiplier = _BYTE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ValueError(f"Unknown byte size unit {unit!r} in {value!r}")
    return int(float(number) * multiplier) if "." in number else int(number) * multiplier


def format_bytes(size: int) -> str:
    """Format a byte count with binary units, e.g. ``"1.5 GiB"``."""
    if size < 1024:
        return f"{size} B"
    value = float(size)
    suffix = _BINARY_SUFFIXES[0]
    for suffix in _BINARY_SUFFIXES:
        value /= 1024
        if value < 1024:
            break
    return f"{value:.1f} {suffix}"


def parse_duration(value: str) -> float:
    """
    Parse a duration such as ``"1h30m"``, ``"2d"``, ``"1w2d3h"`` or ``"300s"``.

    Returns:
        Duration in seconds

    Raises:
        ValueError: If the value is malformed
    """
    text = value.strip()
    if text == "0":
        return 0.0
    if not text:
        raise ValueError("Empty duration")

    total = 0.0
    position = 0
    for match in _DURATION_PART_RE.finditer(text):
        if match.start() != position:
            break
        number, unit = match.groups()
        total += float(number) * _DURATION_UNITS[unit]
        position = match.end()

    if position != len(text):
        raise ValueError(f"Invalid duration: {value!r}")
    return total
