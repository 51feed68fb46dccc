"""Human-readable size strings ("5M", "2GB") to byte counts and back."""

from __future__ import annotations

import math
import re
from typing import Final

from uploadkit.domain.errors import InvalidOptions

# Binary units: every step multiplies by 1024.
UNIT_STEPS: Final[dict[str, int]] = {
    "": 0,
    "B": 0,
    "K": 1,
    "KB": 1,
    "M": 2,
    "MB": 2,
    "G": 3,
    "GB": 3,
    "T": 4,
    "TB": 4,
}

LABELS: Final = ("B", "KB", "MB", "GB", "TB", "PB", "EB", "ZB", "YB")

SIZE_RE = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?|\.\d+)\s*(?P<unit>[A-Za-z]*)\s*$")


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero."""
    if value < 0:
        return -math.floor(-value + 0.5)
    return math.floor(value + 0.5)


def parse_size(value: str | int | float) -> int:
    """Return the number of bytes described by `value`."""
    if isinstance(value, bool):
        raise InvalidOptions(f"Invalid size: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise InvalidOptions(f"Size must not be negative: {value!r}")
        return int(value)

    match = SIZE_RE.match(value or "")
    if not match:
        raise InvalidOptions(f"Invalid size: {value!r}")

    unit = match.group("unit").upper()
    if unit not in UNIT_STEPS:
        raise InvalidOptions(f"Unknown size unit: {match.group('unit')!r}")

    return int(float(match.group("value")) * 1024 ** UNIT_STEPS[unit])


def format_size(size: int | float) -> str:
    """
    Format a byte count using the largest unit that keeps the value below 1024.

    The result is rounded to a whole number, so parsing it back is lossy.
    """
    value = float(size)
    index = 0
    while value >= 1024 and index < len(LABELS) - 1:
        value /= 1024
        index += 1
    return f"{round_half_up(value)} {LABELS[index]}"
