import pathlib
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from raceday.race import (
    RaceStateError,
    advance_status,
    check_in,
    checked_in_runners,
    find_runner,
    finish_race,
    new_race,
    require_active,
    set_distance_active,
    start_race,
)


@pytest.fixture()
def race(roster):
    return new_race("R1", "Summer Handicap", "2025-06-01", roster)


def test_new_race_defaults(race):
    assert race["status"] == "setup"
    assert race["start_time"] is None
    assert race["next_temp_number"] == 999
    runner = find_runner(race, 101)
    assert runner["status"] == "not_started"
    assert runner["handicap_status"] == "official"
    assert runner["current_handicap_10k"] == ""


def test_status_moves_forward_one_step(race):
    advance_status(race, "checkin")
    with pytest.raises(RaceStateError):
        advance_status(race, "setup")
    with pytest.raises(RaceStateError):
        advance_status(race, "finished")
    with pytest.raises(ValueError):
        advance_status(race, "paused")


def test_active_requires_start(race):
    advance_status(race, "checkin")
    with pytest.raises(RaceStateError):
        advance_status(race, "active")


def test_start_race_once(race, caplog):
    caplog.set_level("INFO")
    advance_status(race, "checkin")
    start_race(race, 1_700_000_000_000)
    assert race["status"] == "active"
    assert race["start_time"] == 1_700_000_000_000
    require_active(race)
    with pytest.raises(RaceStateError):
        start_race(race, 1_700_000_001_000)
    assert any("started" in r.getMessage() for r in caplog.records)


def test_start_before_checkin_rejected(race):
    with pytest.raises(RaceStateError):
        start_race(race, 1000)
    with pytest.raises(RaceStateError):
        require_active(race)


def test_finish_race(race):
    advance_status(race, "checkin")
    start_race(race, 1000)
    finish_race(race)
    assert race["status"] == "finished"
    with pytest.raises(RaceStateError):
        check_in(race, 101)


def test_check_in_assigns_order_once(race):
    check_in(race, 102)
    check_in(race, 101)
    check_in(race, 102)
    assert find_runner(race, 102)["checkin_order"] == 1
    assert find_runner(race, 101)["checkin_order"] == 2
    assert race["checkin_count"] == 2


def test_check_in_switches_distance_and_adjusts(race):
    runner = check_in(race, 101, distance="10km", adjust_seconds=5)
    assert runner["distance"] == "10km"
    assert runner["current_handicap_10k"] == "00:05"
    assert runner["current_handicap_5k"] == "01:30"
    runner = check_in(race, 102, adjust_seconds=-5)
    assert runner["current_handicap_5k"] == "01:55"


def test_checked_in_runners_honours_active_distances(race):
    for member in (101, 102, 103):
        check_in(race, member)
    set_distance_active(race, "5km", False)
    assert [r["member_number"] for r in checked_in_runners(race)] == [103]
