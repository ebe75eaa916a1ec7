"""Placings, championship points and the per-distance results report."""

from __future__ import annotations

from typing import Dict, Iterable, List, Tuple

from . import policy
from .finish import flag_for, net_time_ms
from .handicap import calculate_handicaps
from .timecodec import format_finish_time

EXCLUDED_FROM_RANKING = ("dnf", "early_start", "starter_timekeeper")


def _checkin_key(runner: Dict, roster_index: int) -> Tuple[int, int]:
    order = runner.get("checkin_order")
    return (order if order is not None else 10**9, roster_index)


def ranked_finishers(runners: List[Dict], distance: str) -> List[Dict]:
    """Finishers for ``distance`` fastest first; ties go to the earlier check-in."""
    indexed = [
        (idx, r)
        for idx, r in enumerate(runners)
        if r.get("distance") == distance
        and r.get("finish_time") is not None
        and r.get("status") not in EXCLUDED_FROM_RANKING
    ]
    indexed.sort(key=lambda item: (item[1]["finish_time"], _checkin_key(item[1], item[0])))
    return [r for _idx, r in indexed]


def assign_positions(runners: List[Dict]) -> Dict[int, int]:
    """Return member_number -> 1-based place, computed per distance."""
    positions: Dict[int, int] = {}
    for distance in policy.DISTANCES:
        for place, runner in enumerate(ranked_finishers(runners, distance), start=1):
            positions[runner["member_number"]] = place
    return positions


def points_for(runner: Dict, position: int | None) -> float:
    """Championship points for a runner's placing.

    Casual runners never score. Starter/timekeepers receive the fixed
    timekeeper award; other unplaced runners score nothing.
    """
    if runner.get("handicap_status", "official") == "casual":
        return 0.0
    if runner.get("status") == "starter_timekeeper":
        return float(policy.timekeeper_points())
    if position is None:
        return 0.0
    return policy.championship_points(position)


def calculate_race_results(runners: Iterable[Dict]) -> Dict[str, List[Dict]]:
    """Build the results/handicap report for a race.

    Each distance lists placed finishers in order followed by flagged runners
    with ``position`` of ``None`` and zero points (starter/timekeepers aside).
    Runners who neither finished nor were flagged are left out.

    Returns:
        ``{"5km": [...], "10km": [...]}`` of row dicts with ``position``,
        ``member_number``, ``full_name``, ``status``, ``finish_time_ms``,
        ``finish_time``, ``net_time``, ``old_handicap``, ``new_handicap`` and
        ``points_earned``.
    """
    runners = list(runners)
    positions = assign_positions(runners)
    handicaps = {h["member_number"]: h for h in calculate_handicaps(runners, positions)}
    by_member = {r["member_number"]: r for r in runners}

    report: Dict[str, List[Dict]] = {d: [] for d in policy.DISTANCES}
    placed: Dict[str, List[Dict]] = {d: [] for d in policy.DISTANCES}
    unplaced: Dict[str, List[Dict]] = {d: [] for d in policy.DISTANCES}
    for member, result in handicaps.items():
        runner = by_member[member]
        position = positions.get(member)
        finish = runner.get("finish_time")
        net = net_time_ms(runner)
        row = {
            "position": position,
            "member_number": member,
            "full_name": runner.get("full_name"),
            "distance": result["distance"],
            "status": runner.get("status"),
            "flag": flag_for(runner),
            "finish_time_ms": finish,
            "finish_time": format_finish_time(finish) if finish is not None else "",
            "net_time": format_finish_time(net) if net is not None else "",
            "old_handicap": result["old_handicap"],
            "new_handicap": result["new_handicap"],
            "points_earned": points_for(runner, position),
        }
        bucket = placed if position is not None else unplaced
        bucket.setdefault(result["distance"], []).append(row)

    for distance in set(placed) | set(unplaced):
        ordered = sorted(placed.get(distance, []), key=lambda r: r["position"])
        ordered += sorted(unplaced.get(distance, []), key=lambda r: r["member_number"])
        report[distance] = ordered
    return report


def apply_results(race: Dict, report: Dict[str, List[Dict]]) -> Dict:
    """Write positions, new handicaps and points back onto the roster."""
    rows = {row["member_number"]: row for rows in report.values() for row in rows}
    for runner in race.get("runners", []):
        row = rows.get(runner.get("member_number"))
        if row is None:
            continue
        runner["finish_position"] = row["position"]
        runner["new_handicap"] = row["new_handicap"]
        runner["points_earned"] = row["points_earned"]
    return race


def compute_championship_standings(races: Iterable[Dict[str, List[Dict]]], distance: str) -> List[Dict]:
    """Aggregate points across race reports for one distance.

    Args:
        races: Reports as returned by :func:`calculate_race_results`.
        distance: ``"5km"`` or ``"10km"``.

    Returns:
        Standings sorted by total points (high points wins), ties by name,
        with ``place`` and the number of races scored.
    """
    totals: Dict[int, float] = {}
    counts: Dict[int, int] = {}
    names: Dict[int, str] = {}
    for report in races:
        for res in report.get(distance, []):
            member = res.get("member_number")
            points = res.get("points_earned", 0.0) or 0.0
            totals[member] = totals.get(member, 0.0) + points
            if points > 0:
                counts[member] = counts.get(member, 0) + 1
            names[member] = res.get("full_name") or ""

    standings = [
        {
            "member_number": member,
            "full_name": names[member],
            "total_points": total,
            "races": counts.get(member, 0),
        }
        for member, total in totals.items()
        if total > 0
    ]
    standings.sort(key=lambda r: (-r["total_points"], r["full_name"]))

    for place, entry in enumerate(standings, start=1):
        entry["place"] = place

    return standings


__all__ = [
    "apply_results",
    "assign_positions",
    "calculate_race_results",
    "compute_championship_standings",
    "points_for",
    "ranked_finishers",
]
