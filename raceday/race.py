"""Race aggregate: status transitions, start time and check-in.

Races and runners are plain dicts shaped like the stored records so they can
be handed straight to the datastore and serialised by the API.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from .timecodec import adjust_handicap

logger = logging.getLogger(__name__)

RACE_STATUSES = ("setup", "checkin", "active", "finished")
RUNNER_STATUSES = ("not_started", "racing", "finished", "dnf", "early_start", "starter_timekeeper")
HANDICAP_STATUSES = ("official", "provisional", "casual")

FIRST_TEMP_NUMBER = 999


class RaceStateError(Exception):
    """Operation is not allowed in the race's current state."""


class UnknownRunnerError(KeyError):
    """Member number is not on the race roster."""


def normalize_runner(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Return a roster entry with every runner field present."""
    return {
        "member_number": int(raw["member_number"]),
        "full_name": raw.get("full_name") or f"Runner {raw['member_number']}",
        "distance": raw.get("distance", "5km"),
        "current_handicap_5k": raw.get("current_handicap_5k") or "",
        "current_handicap_10k": raw.get("current_handicap_10k") or "",
        "handicap_status": raw.get("handicap_status") or "official",
        "checked_in": bool(raw.get("checked_in", False)),
        "checkin_order": raw.get("checkin_order"),
        "status": raw.get("status") or "not_started",
        "finish_time": raw.get("finish_time"),
        "manual_override": bool(raw.get("manual_override", False)),
        "new_handicap": raw.get("new_handicap"),
        "finish_position": raw.get("finish_position"),
        "points_earned": raw.get("points_earned", 0),
    }


def new_race(race_id: str, name: str, date: str, runners: Iterable[Dict[str, Any]] = ()) -> Dict[str, Any]:
    return {
        "id": race_id,
        "name": name,
        "date": date,
        "status": "setup",
        "start_time": None,
        "runners": [normalize_runner(r) for r in runners],
        "race_5k_active": True,
        "race_10k_active": True,
        "next_temp_number": FIRST_TEMP_NUMBER,
        "checkin_count": 0,
    }


def find_runner(race: Dict[str, Any], member_number: int) -> Dict[str, Any]:
    for runner in race.get("runners", []):
        if runner.get("member_number") == member_number:
            return runner
    raise UnknownRunnerError(member_number)


def advance_status(race: Dict[str, Any], status: str) -> Dict[str, Any]:
    """Move the race one step along setup -> checkin -> active -> finished."""
    if status not in RACE_STATUSES:
        raise ValueError(f"Unknown race status '{status}'")
    current = RACE_STATUSES.index(race.get("status", "setup"))
    target = RACE_STATUSES.index(status)
    if target != current + 1:
        raise RaceStateError(f"Cannot move race from '{race.get('status')}' to '{status}'")
    if status == "active" and race.get("start_time") is None:
        raise RaceStateError("Use start_race to activate a race")
    race["status"] = status
    return race


def start_race(race: Dict[str, Any], start_time_ms: int) -> Dict[str, Any]:
    """Record the race start time and activate the race.

    ``start_time`` is set exactly once; a second start is rejected.
    """
    if race.get("start_time") is not None:
        raise RaceStateError("Race start time is already set")
    if race.get("status") != "checkin":
        raise RaceStateError(f"Cannot start a race in status '{race.get('status')}'")
    race["start_time"] = int(start_time_ms)
    race["status"] = "active"
    logger.info("race %s started at %s", race.get("id"), race["start_time"])
    return race


def finish_race(race: Dict[str, Any]) -> Dict[str, Any]:
    return advance_status(race, "finished")


def require_active(race: Dict[str, Any]) -> None:
    if race.get("status") != "active":
        raise RaceStateError(f"Race is not active (status '{race.get('status')}')")


def check_in(
    race: Dict[str, Any],
    member_number: int,
    distance: Optional[str] = None,
    adjust_seconds: int = 0,
) -> Dict[str, Any]:
    """Check a runner in, optionally switching distance and nudging the delay.

    ``adjust_seconds`` moves the distance-appropriate handicap and is floored
    at ``0:00``.
    """
    if race.get("status") == "finished":
        raise RaceStateError("Race is already finished")
    runner = find_runner(race, member_number)
    if distance:
        runner["distance"] = distance
    if adjust_seconds:
        key = handicap_key(runner["distance"])
        runner[key] = adjust_handicap(runner.get(key), adjust_seconds)
    if not runner.get("checked_in") or runner.get("checkin_order") is None:
        race["checkin_count"] = int(race.get("checkin_count") or 0) + 1
        runner["checkin_order"] = race["checkin_count"]
    runner["checked_in"] = True
    return runner


def handicap_key(distance: str) -> str:
    return "current_handicap_5k" if distance == "5km" else "current_handicap_10k"


def set_distance_active(race: Dict[str, Any], distance: str, active: bool) -> None:
    race["race_5k_active" if distance == "5km" else "race_10k_active"] = bool(active)


def checked_in_runners(race: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Checked-in runners in check-in (roster) order, honouring active distances."""
    active = {
        "5km": race.get("race_5k_active", True),
        "10km": race.get("race_10k_active", True),
    }
    return [r for r in race.get("runners", []) if r.get("checked_in") and active.get(r.get("distance"), True)]


__all__ = [
    "FIRST_TEMP_NUMBER",
    "HANDICAP_STATUSES",
    "RACE_STATUSES",
    "RUNNER_STATUSES",
    "RaceStateError",
    "UnknownRunnerError",
    "advance_status",
    "check_in",
    "checked_in_runners",
    "find_runner",
    "finish_race",
    "handicap_key",
    "new_race",
    "normalize_runner",
    "require_active",
    "set_distance_active",
    "start_race",
]
