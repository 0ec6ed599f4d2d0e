"""
Clock-time helpers shared by the optimization services.

All schedule times are "HH:MM" strings. Internally everything is handled as
minutes since midnight, with gaps normalised across the midnight boundary.
"""

import re
from typing import Optional

from connection_optimizer.type_defs import Minutes

MINUTES_PER_DAY = 24 * 60
HALF_DAY_MINUTES = 12 * 60

_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def is_valid_time(value: Optional[str]) -> bool:
    """True for "H:MM"/"HH:MM" strings with minutes in 0-59 (hours up to 47)."""
    if not isinstance(value, str):
        return False
    match = _TIME_PATTERN.match(value.strip())
    if not match:
        return False
    hours, minutes = int(match.group(1)), int(match.group(2))
    return 0 <= hours < 48 and 0 <= minutes < 60


def time_to_minutes(value: str) -> Minutes:
    """Convert "HH:MM" to minutes since midnight (hours >= 24 wrap)."""
    match = _TIME_PATTERN.match(value.strip())
    if not match:
        raise ValueError(f"Invalid time format: {value!r} (expected HH:MM)")
    hours, minutes = int(match.group(1)), int(match.group(2))
    return (hours % 24) * 60 + minutes


def minutes_to_time(minutes: float) -> str:
    """Convert minutes to "HH:MM", wrapping at 24h."""
    total = int(round(minutes)) % MINUTES_PER_DAY
    return f"{total // 60:02d}:{total % 60:02d}"


def normalize_gap(gap: float) -> float:
    """Fold a raw minute difference into the (-12h, +12h] range."""
    if gap < -HALF_DAY_MINUTES:
        return gap + MINUTES_PER_DAY
    if gap > HALF_DAY_MINUTES:
        return gap - MINUTES_PER_DAY
    return gap


def time_gap(later: str, earlier: str) -> float:
    """Signed minutes from *earlier* to *later*, handling midnight wraparound."""
    return normalize_gap(time_to_minutes(later) - time_to_minutes(earlier))


def shift_time(value: str, delta_minutes: float) -> str:
    return minutes_to_time(time_to_minutes(value) + delta_minutes)


__all__ = [
    "MINUTES_PER_DAY",
    "HALF_DAY_MINUTES",
    "is_valid_time",
    "time_to_minutes",
    "minutes_to_time",
    "normalize_gap",
    "time_gap",
    "shift_time",
]
