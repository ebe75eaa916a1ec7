"""Handicap recalculation from finish data.

Finish times are measured from the gun. A runner whose handicap was exact
would cross the line at the distance's target time, so podium finishers are
pushed back by at least a fixed minimum, or by however far they beat the
target when that is more, rounded up to the policy increment. Mid-field
runners keep their handicap and the tail of the field is pulled in. Nobody
goes below ``0:00``.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from . import policy
from .race import handicap_key
from .timecodec import format_mmss, parse_mmss, round_up_to_increment

UNCHANGED_STATUSES = ("dnf", "early_start")


def adjustment_ms(distance: str, position: int, finish_ms: int) -> int:
    """Return the handicap change for a finisher at ``position``."""
    minimum = policy.podium_minimum_ms(distance, position)
    if minimum is None:
        return policy.position_delta_ms(distance, position)
    beaten_by = policy.target_finish_ms(distance) - finish_ms
    return round_up_to_increment(max(minimum, beaten_by), policy.handicap_increment_ms())


def new_handicap(old_handicap: Optional[str], distance: str, position: int, finish_ms: int) -> str:
    """Compute the next handicap for a ranked finisher.

    Args:
        old_handicap: Current ``MM:SS`` handicap; empty means ``0:00``.
        distance: ``"5km"`` or ``"10km"``.
        position: 1-based finishing place within the distance.
        finish_ms: Finish time from the race start.
    """
    old_ms = parse_mmss(old_handicap)
    return format_mmss(max(0, old_ms + adjustment_ms(distance, position, finish_ms)))


def timekeeper_handicap(old_handicap: Optional[str], distance: str) -> str:
    old_ms = parse_mmss(old_handicap)
    return format_mmss(max(0, old_ms + policy.timekeeper_delta_ms(distance)))


def calculate_handicaps(runners: Iterable[Dict], positions: Dict[int, int]) -> List[Dict]:
    """Return a handicap result for every runner that took part.

    ``positions`` maps member number to finishing place as produced by
    :func:`raceday.results.assign_positions`. DNF and early starters keep
    their handicap; starter/timekeepers get the timekeeper adjustment.
    Runners with neither a place nor a flag are skipped.
    """
    results: List[Dict] = []
    for runner in runners:
        member = runner.get("member_number")
        distance = runner.get("distance")
        old = runner.get(handicap_key(distance)) or ""
        status = runner.get("status")
        position = positions.get(member)
        if status in UNCHANGED_STATUSES:
            # no start delay stays unset
            revised = format_mmss(parse_mmss(old)) if old else old
        elif status == "starter_timekeeper":
            revised = timekeeper_handicap(old, distance)
        elif position is not None:
            revised = new_handicap(old, distance, position, runner["finish_time"])
        else:
            continue
        results.append(
            {
                "member_number": member,
                "distance": distance,
                "old_handicap": old,
                "new_handicap": revised,
                "position": position,
            }
        )
    return results


__all__ = [
    "adjustment_ms",
    "calculate_handicaps",
    "new_handicap",
    "timekeeper_handicap",
]
