"""Handicap and championship policy tables.

Defaults ship in ``data/settings.json``. The app factory and the settings API
call :func:`configure` with the stored settings so later calculations pick up
the new tables without a restart.
"""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .timecodec import MS_PER_SECOND, parse_mmss

DATA_DIR = Path(__file__).resolve().parent / "data"

DISTANCES = ("5km", "10km")


def _build_lookup(entries: List[Dict], key_field: str, value_field: str) -> Tuple[Dict[int, float], float]:
    """Build lookup dict and default value from settings entries."""
    lookup: Dict[int, float] = {}
    default = 0.0
    for item in entries:
        key = item[key_field]
        value = item[value_field]
        if isinstance(key, int):
            lookup[int(key)] = value
        elif key == "default_or_higher":
            default = value
    return lookup, default


def load_default_settings() -> Dict[str, Any]:
    with (DATA_DIR / "settings.json").open() as f:
        return json.load(f)


_SETTINGS: Dict[str, Any] = {}
_INCREMENT_MS = 15 * MS_PER_SECOND
_TARGETS: Dict[str, int] = {}
_PODIUM_MINIMUMS: Dict[str, Dict[int, float]] = {}
_DELTAS: Dict[str, Tuple[Dict[int, float], float]] = {}
_TIMEKEEPER_DELTAS: Dict[str, int] = {}
_POINTS: Dict[int, float] = {}
_POINTS_DEFAULT = 0.0
_TIMEKEEPER_POINTS = 0


def configure(settings: Dict[str, Any] | None) -> None:
    """Rebuild the lookups from ``settings``.

    Sections missing from ``settings`` keep the shipped defaults.
    """
    global _SETTINGS, _INCREMENT_MS, _TARGETS, _PODIUM_MINIMUMS, _DELTAS
    global _TIMEKEEPER_DELTAS, _POINTS, _POINTS_DEFAULT, _TIMEKEEPER_POINTS

    merged = load_default_settings()
    merged.update(settings or {})

    _INCREMENT_MS = int(merged["handicap_increment_s"]) * MS_PER_SECOND
    _TARGETS = {d: parse_mmss(t) for d, t in merged["target_finish_by_distance"].items()}
    _PODIUM_MINIMUMS = {
        d: _build_lookup(rows, "rank", "minimum_s")[0]
        for d, rows in merged["podium_minimum_by_rank"].items()
    }
    _DELTAS = {
        d: _build_lookup(rows, "rank", "delta_s")
        for d, rows in merged["handicap_delta_by_rank"].items()
    }
    _TIMEKEEPER_DELTAS = {d: int(v) for d, v in merged["timekeeper_delta_s"].items()}
    _POINTS, _POINTS_DEFAULT = _build_lookup(merged["championship_points_by_rank"], "rank", "points")
    _TIMEKEEPER_POINTS = int(merged.get("timekeeper_points", 0))
    _SETTINGS = merged


def current_settings() -> Dict[str, Any]:
    return copy.deepcopy(_SETTINGS)


def handicap_increment_ms() -> int:
    return _INCREMENT_MS


def target_finish_ms(distance: str) -> int:
    """Finish time, measured from the gun, that an exact handicap would hit."""
    return _TARGETS[distance]


def podium_minimum_ms(distance: str, position: int) -> int | None:
    """Minimum increase for a podium place, or ``None`` off the podium."""
    minimum = _PODIUM_MINIMUMS.get(distance, {}).get(position)
    if minimum is None:
        return None
    return int(minimum * MS_PER_SECOND)


def position_delta_ms(distance: str, position: int) -> int:
    lookup, default = _DELTAS.get(distance, ({}, 0.0))
    return int(lookup.get(position, default) * MS_PER_SECOND)


def timekeeper_delta_ms(distance: str) -> int:
    return _TIMEKEEPER_DELTAS.get(distance, 0) * MS_PER_SECOND


def championship_points(position: int) -> float:
    return float(_POINTS.get(position, _POINTS_DEFAULT))


def timekeeper_points() -> int:
    return _TIMEKEEPER_POINTS


configure(None)


__all__ = [
    "DISTANCES",
    "championship_points",
    "configure",
    "current_settings",
    "handicap_increment_ms",
    "load_default_settings",
    "podium_minimum_ms",
    "position_delta_ms",
    "target_finish_ms",
    "timekeeper_delta_ms",
    "timekeeper_points",
]
