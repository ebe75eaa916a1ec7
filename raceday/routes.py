from flask import Blueprint, abort, current_app, request
from datetime import datetime
import math
import os
import threading

from . import policy
from .alerts import AlertDispatcher
from .clock import RaceClock, RaceTicker, wall_clock_ms
from .finish import (
    FLAGS,
    all_runners_accounted_for,
    edit_time,
    finish_record,
    record_finish,
    set_flag,
)
from .race import (
    RaceStateError,
    UnknownRunnerError,
    advance_status,
    check_in,
    checked_in_runners,
    finish_race,
    new_race,
    require_active,
    set_distance_active,
    start_race,
)
from .registration import register_new_member
from .results import apply_results, calculate_race_results, compute_championship_standings
from .scheduler import mark_started, next_cohort, project_cohorts, serialize_cohort
from .timecodec import is_valid_mmss
from .datastore import (
    delete_race as ds_delete_race,
    list_finished_races as ds_list_finished_races,
    list_races as ds_list_races,
    load_race as ds_load_race,
    save_race as ds_save_race,
    get_settings as ds_get_settings,
    set_settings as ds_set_settings,
)


bp = Blueprint('main', __name__)

ADJUST_STEP_SECONDS = 5


class RaceRuntime:
    """Live state for a started race: the roster, its clock and alerting."""

    def __init__(self, race: dict, clock: RaceClock, dispatcher: AlertDispatcher, ticker: RaceTicker | None):
        self.race = race
        self.clock = clock
        self.dispatcher = dispatcher
        self.ticker = ticker

    def stop(self) -> None:
        if self.ticker is not None:
            self.ticker.stop()
        self.dispatcher.shutdown()


# race_id -> RaceRuntime for races started in this process
_RUNTIMES: dict[str, RaceRuntime] = {}
_LOCK = threading.RLock()


def _options() -> dict:
    return current_app.extensions.get('raceday', {})


def _runtime_for(race: dict) -> RaceRuntime | None:
    """Return the live runtime for an active race, creating it on first use."""
    race_id = str(race.get('id'))
    with _LOCK:
        runtime = _RUNTIMES.get(race_id)
        if runtime is not None:
            return runtime
        if race.get('status') != 'active' or race.get('start_time') is None:
            return None
        opts = _options()
        clock = RaceClock(race['start_time'], testing_mode=opts.get('testing_mode', False))
        dispatcher = AlertDispatcher(opts['capability'], enabled=opts.get('alerts_enabled', True))
        ticker = None
        if opts.get('ticker_enabled', True):
            ticker = RaceTicker(race, clock, dispatcher)
            ticker.start()
        runtime = RaceRuntime(race, clock, dispatcher, ticker)
        _RUNTIMES[race_id] = runtime
    current_app.logger.info("Race %s clock running (testing_mode=%s)", race_id, clock.testing_mode)
    return runtime


def _drop_runtime(race_id: str) -> None:
    runtime = _RUNTIMES.pop(str(race_id), None)
    if runtime is not None:
        runtime.stop()


def _load_race_or_404(race_id: str) -> dict:
    runtime = _RUNTIMES.get(race_id)
    if runtime is not None:
        return runtime.race
    race = ds_load_race(race_id)
    if race is None:
        abort(404, description=f"Unknown race '{race_id}'")
    return race


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        abort(400, description="Expected a JSON object")
    return data


def _require_member(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        abort(400, description=f"Invalid member number '{value}'")


def _require_distance(value, allow_empty: bool = False):
    if allow_empty and not value:
        return None
    if value not in policy.DISTANCES:
        abort(400, description=f"Unknown distance '{value}'. Expected one of {', '.join(policy.DISTANCES)}.")
    return value


def _validate_runner(raw) -> dict:
    if not isinstance(raw, dict):
        abort(400, description="Each runner must be an object")
    _require_member(raw.get('member_number'))
    _require_distance(raw.get('distance', '5km'))
    for key in ('current_handicap_5k', 'current_handicap_10k'):
        val = raw.get(key)
        if val and not is_valid_mmss(val):
            abort(400, description=f"Invalid handicap '{val}' for runner {raw.get('member_number')}. Expected MM:SS.")
    return raw


def _race_view(race: dict) -> dict:
    out = dict(race)
    runtime = _RUNTIMES.get(str(race.get('id')))
    out['paused'] = bool(runtime and runtime.clock.paused)
    out['all_runners_accounted_for'] = all_runners_accounted_for(race)
    return out


@bp.errorhandler(RaceStateError)
def _race_state_error(err):
    return {'error': str(err)}, 409


@bp.errorhandler(UnknownRunnerError)
def _unknown_runner(err):
    return {'error': f"Unknown runner {err.args[0] if err.args else ''}".strip()}, 404


@bp.route('/health/db')
def health_db():
    """Database connectivity health check.

    Always returns HTTP 200 with a JSON body describing connection status.
    """
    url = os.environ.get('DATABASE_URL')
    if not url:
        return {
            'connected': False,
            'status': 'no_database_url',
            'message': 'DATABASE_URL is not set.'
        }
    try:
        import psycopg2  # type: ignore
        with psycopg2.connect(url, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute('SELECT current_user, current_database(), version()')
                user, db, ver = cur.fetchone()
            return {
                'connected': True,
                'status': 'ok',
                'user': user,
                'database': db,
                'server_version': (ver or '').split('\n')[0],
            }
    except Exception as e:  # pragma: no cover - best-effort health output
        return {
            'connected': False,
            'status': 'error',
            'error': str(e),
        }


@bp.route('/api/races', methods=['GET'])
def list_races():
    return {'races': ds_list_races()}


@bp.route('/api/races', methods=['POST'])
def create_race():
    data = _json_body()
    name = (data.get('name') or '').strip()
    date = (data.get('date') or '').strip()
    if not name or not date:
        abort(400, description="Race name and date are required")
    try:
        datetime.strptime(date, '%Y-%m-%d')
    except ValueError:
        abort(400, description=f"Invalid date '{date}'. Expected YYYY-MM-DD.")
    runners = [_validate_runner(r) for r in (data.get('runners') or [])]
    members = [int(r['member_number']) for r in runners]
    if len(set(members)) != len(members):
        abort(400, description="Duplicate member numbers in roster")

    race_id = str(data.get('race_id') or f"RACE_{date}_{name.replace(' ', '_')}")
    with _LOCK:
        if race_id in _RUNTIMES or ds_load_race(race_id) is not None:
            return {'error': f"Race '{race_id}' already exists"}, 409
        race = new_race(race_id, name, date, runners)
        ds_save_race(race)
    current_app.logger.info("Created race %s with %d runners", race_id, len(race['runners']))
    return _race_view(race), 201


@bp.route('/api/races/<race_id>', methods=['GET'])
def get_race(race_id):
    return _race_view(_load_race_or_404(race_id))


@bp.route('/api/races/<race_id>', methods=['DELETE'])
def delete_race(race_id):
    with _LOCK:
        _load_race_or_404(race_id)
        _drop_runtime(race_id)
        ds_delete_race(race_id)
    return {'status': 'ok'}


@bp.route('/api/races/<race_id>/status', methods=['POST'])
def update_status(race_id):
    data = _json_body()
    with _LOCK:
        race = _load_race_or_404(race_id)
        try:
            advance_status(race, data.get('status'))
        except ValueError as e:
            abort(400, description=str(e))
        for distance, key in (('5km', 'race_5k_active'), ('10km', 'race_10k_active')):
            if key in data:
                set_distance_active(race, distance, bool(data[key]))
        ds_save_race(race)
        if race['status'] == 'finished':
            _drop_runtime(race_id)
    return _race_view(race)


@bp.route('/api/races/<race_id>/checkin', methods=['POST'])
def checkin(race_id):
    data = _json_body()
    member = _require_member(data.get('member_number'))
    distance = _require_distance(data.get('distance'), allow_empty=True)
    try:
        adjust = int(data.get('adjust_seconds') or 0)
    except (TypeError, ValueError):
        abort(400, description=f"Invalid adjustment '{data.get('adjust_seconds')}'")
    if adjust % ADJUST_STEP_SECONDS:
        abort(400, description=f"Adjustment must be a multiple of {ADJUST_STEP_SECONDS} seconds")
    with _LOCK:
        race = _load_race_or_404(race_id)
        runner = check_in(race, member, distance=distance, adjust_seconds=adjust)
        ds_save_race(race)
    return runner


@bp.route('/api/races/<race_id>/register', methods=['POST'])
def register(race_id):
    data = _json_body()
    full_name = (data.get('full_name') or '').strip()
    if not full_name:
        abort(400, description="full_name is required")
    distance = _require_distance(data.get('distance'))
    with _LOCK:
        race = _load_race_or_404(race_id)
        runner = register_new_member(race, full_name, distance)
        ds_save_race(race)
    return runner, 201


@bp.route('/api/races/<race_id>/start', methods=['POST'])
def start(race_id):
    data = _json_body()
    start_time = data.get('start_time_ms')
    if start_time is not None and not isinstance(start_time, (int, float)):
        abort(400, description=f"Invalid start time '{start_time}'")
    with _LOCK:
        race = _load_race_or_404(race_id)
        start_race(race, start_time if start_time is not None else wall_clock_ms())
        ds_save_race(race)
        _runtime_for(race)
    return _race_view(race)


@bp.route('/api/races/<race_id>/pause', methods=['POST'])
def pause(race_id):
    with _LOCK:
        race = _load_race_or_404(race_id)
        require_active(race)
        runtime = _runtime_for(race)
        runtime.clock.pause()
    return {'status': 'paused', 'elapsed_ms': runtime.clock.elapsed_ms()}


@bp.route('/api/races/<race_id>/resume', methods=['POST'])
def resume(race_id):
    with _LOCK:
        race = _load_race_or_404(race_id)
        require_active(race)
        runtime = _runtime_for(race)
        runtime.clock.resume()
    return {'status': 'running', 'elapsed_ms': runtime.clock.elapsed_ms()}


@bp.route('/api/races/<race_id>/queue')
def queue(race_id):
    """Start queue projection for the race.

    Before the start (or with ``?pre_race=1``) every cohort is listed with its
    scheduled delay. ``?elapsed_ms=`` previews the queue at another point in
    the race without touching runner state or alerts.
    """
    preview = request.args.get('elapsed_ms')
    preview_ms = None
    if preview is not None:
        try:
            preview_ms = float(preview)
        except ValueError:
            abort(400, description=f"Invalid elapsed_ms '{preview}'")
        if not math.isfinite(preview_ms):
            abort(400, description=f"Invalid elapsed_ms '{preview}'")

    with _LOCK:
        race = _load_race_or_404(race_id)
        show_pre_race = request.args.get('pre_race') in ('1', 'true') or race.get('status') != 'active'
        runtime = None if show_pre_race else _runtime_for(race)
        if runtime is not None:
            race = runtime.race

        if show_pre_race:
            elapsed = 0
        elif preview_ms is not None:
            elapsed = int(preview_ms)
        else:
            elapsed = runtime.clock.elapsed_ms()

        runners = checked_in_runners(race)
        cohorts = project_cohorts(runners, elapsed, show_pre_race=show_pre_race)
        if runtime is not None and preview is None:
            if runtime.ticker is None and not runtime.clock.paused:
                runtime.dispatcher.tick(cohorts, elapsed)
            if mark_started(runners, elapsed):
                ds_save_race(race)

    upcoming = next_cohort(cohorts)
    return {
        'race_id': race_id,
        'elapsed_ms': elapsed,
        'paused': bool(runtime and runtime.clock.paused),
        'show_pre_race': show_pre_race,
        'cohorts': [serialize_cohort(c, show_pre_race) for c in cohorts],
        'next': serialize_cohort(upcoming, show_pre_race) if upcoming else None,
        'visual_alert': runtime.dispatcher.visual_alert() if runtime else None,
    }


@bp.route('/api/races/<race_id>/finishes', methods=['POST'])
def add_finish(race_id):
    data = _json_body()
    member = _require_member(data.get('member_number'))
    elapsed = data.get('elapsed_ms')
    if elapsed is not None and (not isinstance(elapsed, (int, float)) or elapsed < 0):
        abort(400, description=f"Invalid elapsed time '{elapsed}'")
    with _LOCK:
        race = _load_race_or_404(race_id)
        require_active(race)
        if elapsed is None:
            elapsed = _runtime_for(race).clock.elapsed_ms()
        runner = record_finish(race, member, int(elapsed))
        ds_save_race(race)
        accounted = all_runners_accounted_for(race)
    return {**finish_record(runner), 'all_runners_accounted_for': accounted}


@bp.route('/api/races/<race_id>/finishes/<int:member>/flag', methods=['POST'])
def flag_finish(race_id, member):
    data = _json_body()
    flag = data.get('flag')
    if flag not in FLAGS:
        abort(400, description=f"Unknown flag '{flag}'. Expected one of {', '.join(FLAGS)}.")
    with _LOCK:
        race = _load_race_or_404(race_id)
        require_active(race)
        runner = set_flag(race, member, flag)
        ds_save_race(race)
    return finish_record(runner)


@bp.route('/api/races/<race_id>/finishes/<int:member>/time', methods=['POST'])
def edit_finish(race_id, member):
    data = _json_body()
    fields = {}
    for key in ('minutes', 'seconds'):
        val = data.get(key, 0)
        if not isinstance(val, (int, float)) or val < 0:
            abort(400, description=f"Invalid {key} '{val}'")
        fields[key] = val
    with _LOCK:
        race = _load_race_or_404(race_id)
        require_active(race)
        runner = edit_time(race, member, fields['minutes'], fields['seconds'])
        ds_save_race(race)
    return finish_record(runner)


@bp.route('/api/races/<race_id>/results', methods=['POST'])
def finalize_results(race_id):
    """Compute placings, new handicaps and points, then finish the race."""
    with _LOCK:
        race = _load_race_or_404(race_id)
        require_active(race)
        report = calculate_race_results(race.get('runners', []))
        apply_results(race, report)
        finish_race(race)
        ds_save_race(race)
        _drop_runtime(race_id)
    current_app.logger.info(
        "Results for %s: %d on 5km, %d on 10km",
        race_id, len(report.get('5km', [])), len(report.get('10km', [])),
    )
    return {'race_id': race_id, 'results': report}


def _stored_points(race: dict) -> dict:
    report: dict = {d: [] for d in policy.DISTANCES}
    for runner in race.get('runners', []):
        if runner.get('distance') in report:
            report[runner['distance']].append({
                'member_number': runner.get('member_number'),
                'full_name': runner.get('full_name'),
                'points_earned': runner.get('points_earned') or 0,
            })
    return report


@bp.route('/api/championship')
def championship():
    distance = _require_distance(request.args.get('distance', '10km'))
    reports = [_stored_points(r) for r in ds_list_finished_races()]
    return {'distance': distance, 'standings': compute_championship_standings(reports, distance)}


@bp.route('/api/settings', methods=['GET'])
def get_settings():
    return policy.current_settings()


@bp.route('/api/settings', methods=['POST'])
def save_settings():
    """Persist updated policy tables and rebuild the lookups."""
    payload = _json_body()
    existing = ds_get_settings() or {"version": 0}

    payload["version"] = int(existing.get("version", 0)) + 1
    payload["updated_at"] = datetime.utcnow().isoformat() + "Z"

    previous = policy.current_settings()
    try:
        policy.configure(payload)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        policy.configure(previous)
        abort(400, description=f"Invalid settings: {e}")

    ds_set_settings(payload)
    current_app.logger.info("Settings updated to version %s", payload["version"])
    return {"status": "ok", "version": payload["version"]}
