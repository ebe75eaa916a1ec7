import pathlib
import sys
import threading
import time

import pytest
from flask import Flask

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from raceday import create_app, routes
from raceday.alerts import AlertCapability
from raceday.clock import RaceClock
from raceday.race import check_in, new_race


@pytest.fixture()
def client(memory_store):
    app = create_app()
    app.config.update({"TESTING": True})
    with app.test_client() as c:
        yield c


@pytest.fixture()
def race_id(client, roster):
    res = client.post(
        "/api/races",
        json={"race_id": "R1", "name": "Summer Handicap", "date": "2025-06-01", "runners": roster},
    )
    assert res.status_code == 201
    assert client.post("/api/races/R1/status", json={"status": "checkin"}).status_code == 200
    for member in (101, 102, 103):
        assert client.post("/api/races/R1/checkin", json={"member_number": member}).status_code == 200
    return "R1"


def _start(client, race_id, elapsed_ms=0):
    start = int(time.time() * 1000) - elapsed_ms
    res = client.post(f"/api/races/{race_id}/start", json={"start_time_ms": start})
    assert res.status_code == 200
    return res.get_json()


def test_app_requires_database_url(monkeypatch):
    monkeypatch.delenv("DATABASE_URL")
    with pytest.raises(RuntimeError):
        create_app()


def test_create_and_list_races(client, race_id, memory_store, caplog):
    assert "R1" in memory_store["races"]
    data = client.get("/api/races").get_json()
    assert [r["id"] for r in data["races"]] == ["R1"]
    assert data["races"][0]["checked_in"] == 3
    race = client.get("/api/races/R1").get_json()
    assert race["status"] == "checkin"
    assert [r["checkin_order"] for r in race["runners"]] == [1, 2, 3]


def test_create_race_logs(client, roster, caplog):
    caplog.set_level("INFO")
    client.post("/api/races", json={"name": "Winter", "date": "2025-12-01", "runners": roster})
    assert any(r.getMessage().startswith("Created race RACE_2025-12-01_Winter") for r in caplog.records)


def test_create_race_validation(client, roster):
    assert client.post("/api/races", json={"name": "X"}).status_code == 400
    bad = [dict(roster[0], current_handicap_5k="1:75")]
    assert client.post("/api/races", json={"name": "X", "date": "2025-06-01", "runners": bad}).status_code == 400
    dup = [roster[0], roster[0]]
    assert client.post("/api/races", json={"name": "X", "date": "2025-06-01", "runners": dup}).status_code == 400


def test_duplicate_race_conflicts(client, race_id, roster):
    res = client.post("/api/races", json={"race_id": "R1", "name": "Again", "date": "2025-06-01"})
    assert res.status_code == 409


def test_unknown_race_404(client):
    assert client.get("/api/races/NOPE").status_code == 404


def test_backwards_status_conflicts(client, race_id):
    res = client.post("/api/races/R1/status", json={"status": "setup"})
    assert res.status_code == 409
    assert "error" in res.get_json()
    assert client.post("/api/races/R1/status", json={"status": "bogus"}).status_code == 400


def test_checkin_adjustment_and_distance(client, race_id):
    res = client.post("/api/races/R1/checkin", json={"member_number": 101, "adjust_seconds": -10})
    assert res.get_json()["current_handicap_5k"] == "01:20"
    res = client.post("/api/races/R1/checkin", json={"member_number": 102, "distance": "10km"})
    assert res.get_json()["distance"] == "10km"
    assert client.post("/api/races/R1/checkin", json={"member_number": 101, "adjust_seconds": 3}).status_code == 400
    assert client.post("/api/races/R1/checkin", json={"member_number": 101, "distance": "3km"}).status_code == 400
    assert client.post("/api/races/R1/checkin", json={"member_number": 404}).status_code == 404


def test_register_issues_temp_numbers(client, race_id):
    first = client.post("/api/races/R1/register", json={"full_name": "Gail Green", "distance": "5km"})
    second = client.post("/api/races/R1/register", json={"full_name": "Hal Hunt", "distance": "10km"})
    assert first.status_code == 201
    assert [first.get_json()["member_number"], second.get_json()["member_number"]] == [999, 998]
    assert client.post("/api/races/R1/register", json={"distance": "5km"}).status_code == 400


def test_pre_race_queue(client, race_id):
    data = client.get("/api/races/R1/queue").get_json()
    assert data["show_pre_race"] is True
    assert [c["countdown"] for c in data["cohorts"]] == ["Starts at 01:30", "Starts at 02:00", "Starts at 03:30"]
    assert data["next"]["label"] == "Start Delay: 01:30"


def test_queue_preview_at_elapsed(client, race_id):
    _start(client, race_id)
    data = client.get("/api/races/R1/queue?elapsed_ms=60000").get_json()
    assert [c["countdown"] for c in data["cohorts"]] == ["30s", "1:00", "2:30"]
    data = client.get("/api/races/R1/queue?elapsed_ms=95000").get_json()
    assert [c["label"] for c in data["cohorts"]] == ["Start Delay: 02:00", "Start Delay: 03:30"]
    # previews never move runners along
    race = client.get("/api/races/R1").get_json()
    assert all(r["status"] == "not_started" for r in race["runners"])


def test_live_queue_marks_started_runners(client, race_id, memory_store):
    _start(client, race_id, elapsed_ms=91000)
    data = client.get("/api/races/R1/queue").get_json()
    assert data["cohorts"][0]["countdown"] == "STARTED"
    stored = {r["member_number"]: r for r in memory_store["races"]["R1"]["runners"]}
    assert stored[101]["status"] == "racing"
    assert stored[102]["status"] == "not_started"


def test_live_queue_fires_alert_without_ticker(client, race_id):
    _start(client, race_id, elapsed_ms=86250)
    client.get("/api/races/R1/queue")
    assert 90000 in routes._RUNTIMES["R1"].dispatcher.triggered


def test_double_start_conflicts(client, race_id):
    _start(client, race_id)
    assert client.post("/api/races/R1/start", json={}).status_code == 409


def test_pause_and_resume(client, race_id):
    _start(client, race_id, elapsed_ms=5000)
    paused = client.post("/api/races/R1/pause").get_json()
    assert paused["status"] == "paused"
    assert client.get("/api/races/R1").get_json()["paused"] is True
    time.sleep(0.05)
    again = client.get("/api/races/R1/queue").get_json()
    assert again["elapsed_ms"] == paused["elapsed_ms"]
    assert client.post("/api/races/R1/resume").get_json()["status"] == "running"


def test_finish_before_start_conflicts(client, race_id):
    res = client.post("/api/races/R1/finishes", json={"member_number": 101, "elapsed_ms": 1000})
    assert res.status_code == 409


def test_finish_flag_and_edit(client, race_id, caplog):
    caplog.set_level("INFO")
    _start(client, race_id)
    res = client.post("/api/races/R1/finishes", json={"member_number": 101, "elapsed_ms": 2_940_000})
    assert res.status_code == 200
    body = res.get_json()
    assert body["finish_elapsed_ms"] == 2_940_000
    assert body["all_runners_accounted_for"] is False
    assert any("finish recorded #101" in r.getMessage() for r in caplog.records)

    edited = client.post("/api/races/R1/finishes/101/time", json={"minutes": 48, "seconds": 30}).get_json()
    assert edited == {"member_number": 101, "finish_elapsed_ms": 2_910_000, "manual_override": True, "flag": "none"}

    assert client.post("/api/races/R1/finishes/102/flag", json={"flag": "dnf"}).get_json()["flag"] == "dnf"
    assert client.post("/api/races/R1/finishes/102/flag", json={"flag": "lost"}).status_code == 400
    assert client.post("/api/races/R1/finishes/777/flag", json={"flag": "dnf"}).status_code == 404
    assert client.post("/api/races/R1/finishes/101/time", json={"minutes": -1}).status_code == 400


def test_finish_without_elapsed_uses_race_clock(client, race_id):
    _start(client, race_id, elapsed_ms=600_000)
    body = client.post("/api/races/R1/finishes", json={"member_number": 103}).get_json()
    assert body["finish_elapsed_ms"] >= 600_000


def test_results_and_championship(client, race_id, memory_store):
    _start(client, race_id)
    client.post("/api/races/R1/finishes", json={"member_number": 101, "elapsed_ms": 2_940_000})
    client.post("/api/races/R1/finishes", json={"member_number": 102, "elapsed_ms": 3_010_000})
    client.post("/api/races/R1/finishes/103/flag", json={"flag": "starter_timekeeper"})

    res = client.post("/api/races/R1/results")
    assert res.status_code == 200
    report = res.get_json()["results"]
    assert [r["member_number"] for r in report["5km"]] == [101, 102]
    assert report["5km"][0]["new_handicap"] == "02:30"
    assert report["5km"][1]["new_handicap"] == "02:15"
    assert report["10km"][0]["new_handicap"] == "03:00"
    assert memory_store["races"]["R1"]["status"] == "finished"
    assert "R1" not in routes._RUNTIMES

    standings = client.get("/api/championship?distance=5km").get_json()["standings"]
    assert [(s["member_number"], s["total_points"]) for s in standings] == [(101, 20), (102, 15)]
    ten = client.get("/api/championship?distance=10km").get_json()["standings"]
    assert [(s["member_number"], s["total_points"]) for s in ten] == [(103, 4)]
    assert client.get("/api/championship?distance=3km").status_code == 400

    # a finished race takes no more finishes
    res = client.post("/api/races/R1/finishes", json={"member_number": 101, "elapsed_ms": 1})
    assert res.status_code == 409


def test_settings_get_and_post(client, memory_store):
    assert client.get("/api/settings").get_json()["handicap_increment_s"] == 15
    res = client.post("/api/settings", json={"timekeeper_points": 6})
    assert res.status_code == 200
    first = res.get_json()["version"]
    assert memory_store["settings"]["timekeeper_points"] == 6
    assert client.get("/api/settings").get_json()["timekeeper_points"] == 6
    second = client.post("/api/settings", json={"timekeeper_points": 5}).get_json()["version"]
    assert second == first + 1


def test_invalid_settings_rejected(client, memory_store):
    res = client.post("/api/settings", json={"handicap_increment_s": "fast"})
    assert res.status_code == 400
    assert memory_store["settings"] == {}
    assert client.get("/api/settings").get_json()["handicap_increment_s"] == 15


def test_delete_race(client, race_id, memory_store):
    assert client.delete("/api/races/R1").status_code == 200
    assert "R1" not in memory_store["races"]


@pytest.mark.parametrize("value", ["inf", "-inf", "nan", "soon"])
def test_queue_preview_rejects_non_finite(client, race_id, value):
    _start(client, race_id)
    assert client.get(f"/api/races/R1/queue?elapsed_ms={value}").status_code == 400


def test_concurrent_first_polls_share_one_runtime(monkeypatch, memory_store, roster):
    class CountingCapability(AlertCapability):
        def __init__(self):
            self.calls = 0
            self._lock = threading.Lock()

        def attempt_play(self):
            with self._lock:
                self.calls += 1
            return True

    class SlowClock(RaceClock):
        def __init__(self, *args, **kwargs):
            time.sleep(0.05)
            super().__init__(*args, **kwargs)

    app = create_app()
    app.config.update({"TESTING": True})
    cap = CountingCapability()
    app.extensions["raceday"]["capability"] = cap
    monkeypatch.setattr(routes, "RaceClock", SlowClock)

    race = new_race("R1", "Summer Handicap", "2025-06-01", roster)
    for member in (101, 102, 103):
        check_in(race, member)
    race["status"] = "active"
    race["start_time"] = int(time.time() * 1000) - 86250
    memory_store["races"]["R1"] = race

    statuses = []

    def poll():
        with app.test_client() as c:
            statuses.append(c.get("/api/races/R1/queue").status_code)

    threads = [threading.Thread(target=poll) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert statuses == [200, 200]
    assert len(routes._RUNTIMES) == 1
    deadline = time.time() + 1.0
    while cap.calls == 0 and time.time() < deadline:
        time.sleep(0.01)
    time.sleep(0.05)
    assert cap.calls == 1


def test_module_entry_point_runs_app(monkeypatch):
    from raceday import __main__ as entry

    calls = {}
    monkeypatch.setenv("PORT", "5123")
    monkeypatch.setattr(Flask, "run", lambda self, host=None, port=None: calls.update(host=host, port=port))
    entry.main()
    assert calls == {"host": "0.0.0.0", "port": 5123}
