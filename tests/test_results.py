import pathlib
import sys

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from raceday.finish import record_finish, set_flag
from raceday.race import check_in, new_race
from raceday.results import (
    apply_results,
    assign_positions,
    calculate_race_results,
    compute_championship_standings,
    points_for,
    ranked_finishers,
)
from raceday.timecodec import parse_mmss


@pytest.fixture()
def race():
    roster = [
        {"member_number": 101, "full_name": "Alice Ames", "distance": "5km", "current_handicap_5k": "05:00"},
        {"member_number": 102, "full_name": "Ben Brown", "distance": "5km", "current_handicap_5k": "04:00"},
        {"member_number": 103, "full_name": "Cara Cole", "distance": "10km", "current_handicap_10k": "06:00"},
        {"member_number": 104, "full_name": "Dan Dale", "distance": "5km", "handicap_status": "casual"},
        {"member_number": 105, "full_name": "Eve Eden", "distance": "5km", "current_handicap_5k": "02:00"},
        {"member_number": 106, "full_name": "Finn Ford", "distance": "10km", "current_handicap_10k": "03:00"},
    ]
    race = new_race("R1", "Summer Handicap", "2025-06-01", roster)
    for member in (102, 101, 103, 104, 105, 106):
        check_in(race, member)
    record_finish(race, 101, parse_mmss("49:00"))
    record_finish(race, 102, parse_mmss("49:00"))
    record_finish(race, 104, parse_mmss("51:00"))
    set_flag(race, 105, "dnf")
    record_finish(race, 103, parse_mmss("58:00"))
    set_flag(race, 106, "starter_timekeeper")
    return race


def test_tie_goes_to_earlier_checkin(race):
    ranked = ranked_finishers(race["runners"], "5km")
    assert [r["member_number"] for r in ranked] == [102, 101, 104]


def test_tie_without_checkin_order_uses_roster_order(race):
    for r in race["runners"]:
        r["checkin_order"] = None
    ranked = ranked_finishers(race["runners"], "5km")
    assert [r["member_number"] for r in ranked] == [101, 102, 104]


def test_positions_are_per_distance(race):
    assert assign_positions(race["runners"]) == {102: 1, 101: 2, 104: 3, 103: 1}


def test_flagged_runners_are_not_ranked(race):
    set_flag(race, 101, "early_start")
    assert 101 not in assign_positions(race["runners"])


def test_points(race):
    runners = {r["member_number"]: r for r in race["runners"]}
    assert points_for(runners[102], 1) == 20
    assert points_for(runners[101], 2) == 15
    assert points_for(runners[104], 3) == 0
    assert points_for(runners[106], None) == 4
    assert points_for(runners[105], None) == 0
    assert points_for(runners[101], 25) == 1


def test_race_report(race):
    report = calculate_race_results(race["runners"])
    five = report["5km"]
    assert [r["member_number"] for r in five] == [102, 101, 104, 105]
    assert [r["position"] for r in five] == [1, 2, 3, None]
    assert five[0]["new_handicap"] == "05:00"
    assert five[0]["finish_time"] == "49:00.0"
    assert five[0]["net_time"] == "45:00.0"
    assert five[3]["flag"] == "dnf"
    assert five[3]["new_handicap"] == "02:00"
    assert five[3]["points_earned"] == 0

    ten = report["10km"]
    assert [r["member_number"] for r in ten] == [103, 106]
    assert ten[0]["new_handicap"] == "08:00"
    assert ten[1]["new_handicap"] == "02:30"
    assert ten[1]["points_earned"] == 4


def test_apply_results_writes_back(race):
    apply_results(race, calculate_race_results(race["runners"]))
    runners = {r["member_number"]: r for r in race["runners"]}
    assert runners[102]["finish_position"] == 1
    assert runners[102]["points_earned"] == 20
    assert runners[103]["new_handicap"] == "08:00"
    assert runners[105]["finish_position"] is None


def test_championship_standings():
    week1 = {"10km": [
        {"member_number": 1, "full_name": "Zed", "points_earned": 20},
        {"member_number": 2, "full_name": "Amy", "points_earned": 15},
        {"member_number": 3, "full_name": "Bob", "points_earned": 0},
    ]}
    week2 = {"10km": [
        {"member_number": 2, "full_name": "Amy", "points_earned": 5},
        {"member_number": 1, "full_name": "Zed", "points_earned": 0},
    ]}
    table = compute_championship_standings([week1, week2], "10km")
    # Amy and Zed tie on 20; name order breaks the tie
    assert [(e["full_name"], e["total_points"], e["place"]) for e in table] == [
        ("Amy", 20, 1),
        ("Zed", 20, 2),
    ]
    assert table[0]["races"] == 2
    assert table[1]["races"] == 1
    assert compute_championship_standings([week1], "5km") == []
