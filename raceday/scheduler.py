"""Start-group projection for the staggered start queue.

Checked-in runners are bucketed by their distance-appropriate handicap offset
and each cohort is classified against the race clock. The projection is
recomputed from scratch on every tick, so arbitrary jumps in elapsed time
(pause/resume, testing-mode acceleration) need no special handling.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .race import handicap_key
from .timecodec import format_countdown, format_start_delay, parse_mmss

# Cohorts stay on screen this long after their start.
RETAIN_AFTER_START_MS = 2000
# Emphasis window ahead of a cohort's start.
STARTING_WINDOW_MS = 3000


def handicap_for(runner: Dict) -> str:
    """Return the handicap text for the runner's entered distance."""
    return runner.get(handicap_key(runner.get("distance"))) or ""


def start_offset_ms(runner: Dict) -> int:
    return parse_mmss(handicap_for(runner))


def project_cohorts(
    runners: Iterable[Dict],
    elapsed_ms: int,
    show_pre_race: bool = False,
    include_unset: bool = False,
) -> List[Dict]:
    """Group checked-in runners into start cohorts.

    Args:
        runners: Roster entries; only checked-in runners are grouped.
        elapsed_ms: Race-elapsed milliseconds, any finite value.
        show_pre_race: Show every cohort and never mark one as started.
        include_unset: Place runners with no handicap in a cohort at offset
            ``0``. By default they are left out of the queue since they go
            with the gun.

    Returns:
        Cohort dicts ordered by ``start_offset_ms`` with ``runners``,
        ``time_until_start_ms`` and ``has_started``.
    """
    groups: Dict[int, List[Dict]] = {}
    for runner in runners:
        if not runner.get("checked_in"):
            continue
        handicap = handicap_for(runner)
        if not handicap and not include_unset:
            continue
        groups.setdefault(parse_mmss(handicap), []).append(runner)

    cohorts: List[Dict] = []
    for offset in sorted(groups):
        time_until_start = offset - elapsed_ms
        if not show_pre_race and time_until_start <= -RETAIN_AFTER_START_MS:
            continue
        cohorts.append(
            {
                "start_offset_ms": offset,
                "runners": groups[offset],
                "time_until_start_ms": time_until_start,
                "has_started": not show_pre_race and offset <= elapsed_ms,
            }
        )
    return cohorts


def next_cohort(cohorts: Iterable[Dict]) -> Optional[Dict]:
    """First cohort that has not started yet, or ``None``."""
    for cohort in cohorts:
        if not cohort["has_started"]:
            return cohort
    return None


def is_starting(cohort: Dict) -> bool:
    return 0 < cohort["time_until_start_ms"] <= STARTING_WINDOW_MS


def cohort_label(cohort: Dict) -> str:
    return f"Start Delay: {format_start_delay(cohort['start_offset_ms'])}"


def cohort_display(cohort: Dict, show_pre_race: bool = False) -> str:
    if show_pre_race:
        return f"Starts at {format_start_delay(cohort['start_offset_ms'])}"
    return format_countdown(cohort["time_until_start_ms"])


def mark_started(runners: Iterable[Dict], elapsed_ms: int) -> List[Dict]:
    """Move checked-in runners whose start has passed from not_started to racing.

    Returns the runners that changed.
    """
    changed = []
    for runner in runners:
        if not runner.get("checked_in") or runner.get("status", "not_started") != "not_started":
            continue
        if start_offset_ms(runner) <= elapsed_ms:
            runner["status"] = "racing"
            changed.append(runner)
    return changed


def serialize_cohort(cohort: Dict, show_pre_race: bool = False) -> Dict:
    """JSON view of a cohort for the start queue."""
    return {
        "start_offset_ms": cohort["start_offset_ms"],
        "time_until_start_ms": cohort["time_until_start_ms"],
        "has_started": cohort["has_started"],
        "label": cohort_label(cohort),
        "countdown": cohort_display(cohort, show_pre_race),
        "starting": is_starting(cohort),
        "runners": [
            {
                "member_number": r.get("member_number"),
                "full_name": r.get("full_name"),
                "distance": r.get("distance"),
            }
            for r in cohort["runners"]
        ],
    }


__all__ = [
    "RETAIN_AFTER_START_MS",
    "STARTING_WINDOW_MS",
    "cohort_display",
    "cohort_label",
    "handicap_for",
    "is_starting",
    "mark_started",
    "next_cohort",
    "project_cohorts",
    "serialize_cohort",
    "start_offset_ms",
]
