"""Conversions between ``MM:SS`` handicap text and millisecond offsets."""

from __future__ import annotations

import math

MS_PER_SECOND = 1000
SECONDS_PER_MINUTE = 60


def _pad_mmss(ms: int) -> str:
    """Return ``ms`` floored to whole seconds as zero-padded ``MM:SS``."""
    total_seconds = max(0, int(ms // MS_PER_SECOND))
    minutes, seconds = divmod(total_seconds, SECONDS_PER_MINUTE)
    return f"{minutes:02d}:{seconds:02d}"


def parse_mmss(text: str | None) -> int:
    """Return milliseconds for an ``MM:SS`` string.

    An empty or missing value means no start delay and yields ``0``. The text
    is assumed to have been validated upstream; malformed input raises
    whatever ``int`` raises.
    """
    if not text:
        return 0
    minutes, seconds = text.split(":")
    return (int(minutes) * SECONDS_PER_MINUTE + int(seconds)) * MS_PER_SECOND


def format_mmss(ms: int) -> str:
    """Return ``MM:SS`` for a millisecond value, or ``0:00`` when ``ms <= 0``.

    Seconds are floored for display.
    """
    if ms <= 0:
        return "0:00"
    return _pad_mmss(ms)


def is_valid_mmss(text: str | None) -> bool:
    """True when ``text`` is ``M+:SS`` with seconds in ``[0, 59]``."""
    if not isinstance(text, str) or text.count(":") != 1:
        return False
    minutes, seconds = text.split(":")
    if not (minutes.isdigit() and seconds.isdigit()) or len(seconds) != 2:
        return False
    return int(seconds) < SECONDS_PER_MINUTE


def time_to_seconds(text: str | None) -> int:
    return parse_mmss(text) // MS_PER_SECOND


def seconds_to_time(total_seconds: int) -> str:
    return format_mmss(total_seconds * MS_PER_SECOND)


def adjust_handicap(text: str | None, delta_seconds: int) -> str:
    """Shift a handicap by ``delta_seconds``, never below ``0:00``."""
    return seconds_to_time(max(0, time_to_seconds(text) + delta_seconds))


def round_up_to_increment(ms: int, increment_ms: int) -> int:
    """Round ``ms`` up to the next whole multiple of ``increment_ms``.

    Partial seconds count as a full second. Non-positive input yields ``0``.
    """
    if ms <= 0:
        return 0
    total_ms = math.ceil(ms / MS_PER_SECOND) * MS_PER_SECOND
    remainder = total_ms % increment_ms
    if remainder == 0:
        return total_ms
    return total_ms + (increment_ms - remainder)


def format_countdown(ms: int) -> str:
    """Return the countdown shown against a start group.

    Seconds are rounded up so a group never reads ``0s`` before it starts.
    """
    if ms <= 0:
        return "STARTED"
    total_seconds = math.ceil(ms / MS_PER_SECOND)
    minutes, seconds = divmod(total_seconds, SECONDS_PER_MINUTE)
    if minutes > 0:
        return f"{minutes}:{seconds:02d}"
    return f"{seconds}s"


def format_start_delay(ms: int) -> str:
    return _pad_mmss(ms)


def format_finish_time(ms: int) -> str:
    """Return ``M:SS.s`` with the tenths rounded half up."""
    tenths = int((max(0, ms) + 50) // 100)
    minutes, rem = divmod(tenths, SECONDS_PER_MINUTE * 10)
    seconds, tenth = divmod(rem, 10)
    return f"{minutes}:{seconds:02d}.{tenth}"


def ms_from_fields(minutes: float, seconds: float) -> int:
    """Milliseconds for minute/second fields, floored to whole seconds, min 0."""
    total_seconds = math.floor(minutes * SECONDS_PER_MINUTE + seconds)
    return max(0, total_seconds) * MS_PER_SECOND


__all__ = [
    "adjust_handicap",
    "format_countdown",
    "format_finish_time",
    "format_mmss",
    "format_start_delay",
    "is_valid_mmss",
    "ms_from_fields",
    "parse_mmss",
    "round_up_to_increment",
    "seconds_to_time",
    "time_to_seconds",
]
