"""Finish-line recording: captured times, manual corrections and flags.

A second capture for the same runner replaces the first, which is how a
misclick is corrected. Flags and a timed finish are mutually exclusive:
recording a finish clears any flag, and flagging a runner DNF drops the time.
Race status is gated by the caller (see :func:`raceday.race.require_active`).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .race import find_runner
from .scheduler import start_offset_ms
from .timecodec import ms_from_fields

logger = logging.getLogger(__name__)

FLAGS = ("none", "dnf", "early_start", "starter_timekeeper")
FLAGGED_STATUSES = ("dnf", "early_start", "starter_timekeeper")


def record_finish(race: Dict[str, Any], member_number: int, elapsed_ms: int) -> Dict[str, Any]:
    """Create or overwrite the runner's finish, clearing any flag."""
    runner = find_runner(race, member_number)
    runner["finish_time"] = int(elapsed_ms)
    runner["manual_override"] = False
    runner["status"] = "finished"
    logger.info("finish recorded #%s at %sms", member_number, runner["finish_time"])
    return runner


def set_flag(race: Dict[str, Any], member_number: int, flag: str) -> Dict[str, Any]:
    """Flag a runner DNF, early start or starter/timekeeper; ``none`` clears.

    Early starters keep any captured time since they still crossed the line.
    """
    if flag not in FLAGS:
        raise ValueError(f"Unknown finish flag '{flag}'")
    runner = find_runner(race, member_number)
    if flag == "none":
        runner["status"] = "finished" if runner.get("finish_time") is not None else "not_started"
    else:
        runner["status"] = flag
        if flag != "early_start":
            runner["finish_time"] = None
            runner["manual_override"] = False
    logger.info("flag %s set for #%s", flag, member_number)
    return runner


def edit_time(race: Dict[str, Any], member_number: int, minutes: float, seconds: float) -> Dict[str, Any]:
    """Manually correct a finish time from minute/second fields."""
    runner = find_runner(race, member_number)
    runner["finish_time"] = ms_from_fields(minutes, seconds)
    runner["manual_override"] = True
    if runner.get("status") != "early_start":
        runner["status"] = "finished"
    logger.info("finish edited #%s to %sms", member_number, runner["finish_time"])
    return runner


def flag_for(runner: Dict[str, Any]) -> str:
    status = runner.get("status")
    return status if status in FLAGGED_STATUSES else "none"


def finish_record(runner: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "member_number": runner.get("member_number"),
        "finish_elapsed_ms": runner.get("finish_time"),
        "manual_override": bool(runner.get("manual_override")),
        "flag": flag_for(runner),
    }


def net_time_ms(runner: Dict[str, Any]) -> Optional[int]:
    """Running time from the runner's own start, or ``None`` without a finish."""
    finish = runner.get("finish_time")
    if finish is None:
        return None
    return max(0, finish - start_offset_ms(runner))


def all_runners_accounted_for(race: Dict[str, Any]) -> bool:
    """True once every checked-in runner has a finish time or a flag."""
    checked_in = [r for r in race.get("runners", []) if r.get("checked_in")]
    if not checked_in:
        return False
    return all(r.get("finish_time") is not None or r.get("status") in FLAGGED_STATUSES for r in checked_in)


__all__ = [
    "FLAGS",
    "all_runners_accounted_for",
    "edit_time",
    "finish_record",
    "flag_for",
    "net_time_ms",
    "record_finish",
    "set_flag",
]
