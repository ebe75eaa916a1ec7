"""Race-day registration of runners who are not on the imported roster."""

from __future__ import annotations

import logging
from typing import Any, Dict, Tuple

from .race import FIRST_TEMP_NUMBER, RaceStateError, check_in, normalize_runner

logger = logging.getLogger(__name__)


def issue_temp_number(counter: int | None = None) -> Tuple[int, int]:
    """Return ``(issued, next_counter)`` for a counter value.

    The first number of a race is 999 and each issue hands out the current
    value and decrements, so numbers are strictly decreasing and never
    repeat. The caller keeps them clear of real member numbers.
    """
    current = FIRST_TEMP_NUMBER if counter is None else int(counter)
    return current, current - 1


def register_new_member(race: Dict[str, Any], full_name: str, distance: str) -> Dict[str, Any]:
    """Add a race-day entrant under a temporary number, already checked in.

    The counter lives on the race record so it survives a restart within the
    same race. New entrants have no start delay and score as casual.
    """
    if race.get("status") == "finished":
        raise RaceStateError("Race is already finished")
    issued, next_counter = issue_temp_number(race.get("next_temp_number"))
    race["next_temp_number"] = next_counter
    runner = normalize_runner(
        {
            "member_number": issued,
            "full_name": full_name,
            "distance": distance,
            "handicap_status": "casual",
        }
    )
    race.setdefault("runners", []).append(runner)
    check_in(race, issued)
    logger.info("registered %s as temp #%s for %s", full_name, issued, distance)
    return runner


__all__ = ["issue_temp_number", "register_new_member"]
