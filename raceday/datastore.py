from typing import Any, Dict, List, Optional

# PostgreSQL-only datastore proxy
# Routes import from here so tests can swap the datastore_pg functions
# for in-memory versions.

from . import datastore_pg as _pg


def ensure_schema() -> None:
    _pg.ensure_schema()


def load_race(race_id: str) -> Optional[Dict[str, Any]]:
    return _pg.load_race(race_id)


def save_race(race: Dict[str, Any]) -> None:
    _pg.save_race(race)


def delete_race(race_id: str) -> None:
    _pg.delete_race(race_id)


def list_races() -> List[Dict[str, Any]]:
    return _pg.list_races()


def list_finished_races() -> List[Dict[str, Any]]:
    """Return full race documents for every finished race.

    Loads each race listed by ``list_races`` so callers see the stored
    roster with positions and points.
    """
    out: List[Dict[str, Any]] = []
    for summary in _pg.list_races() or []:
        if summary.get("status") != "finished":
            continue
        race = _pg.load_race(str(summary.get("id")))
        if race is not None:
            out.append(race)
    return out


def get_settings() -> Dict[str, Any]:
    return _pg.get_settings()


def set_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    return _pg.set_settings(settings)
