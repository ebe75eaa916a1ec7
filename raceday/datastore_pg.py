import os
import json
from contextlib import contextmanager
from typing import Any, Dict, List, Optional, Tuple

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor, execute_values
from psycopg2 import errors as pg_errors


_POOL: Optional[pg_pool.AbstractConnectionPool] = None

_RACE_COLUMNS = (
    "race_id", "name", "date", "status", "start_time", "race_5k_active",
    "race_10k_active", "next_temp_number", "checkin_count",
)

_RUNNER_COLUMNS = (
    "race_id", "roster_index", "member_number", "full_name", "distance",
    "current_handicap_5k", "current_handicap_10k", "handicap_status",
    "checked_in", "checkin_order", "status", "finish_time_ms",
    "manual_override", "new_handicap", "finish_position", "points_earned",
)


def _env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    val = os.environ.get(name)
    if val is None:
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _connect_kwargs() -> Dict[str, Any]:
    """Common connection kwargs: connect_timeout + TCP keepalives.

    Defaults:
      - connect_timeout: 10 seconds (overridable via DB_CONNECT_TIMEOUT)
      - keepalives: enabled by default; can be disabled by DB_KEEPALIVES=0
      - keepalive tunables applied if provided (IDLE/INTERVAL/COUNT)
    """
    kwargs: Dict[str, Any] = {}
    ct_env = _env_int("DB_CONNECT_TIMEOUT")
    kwargs["connect_timeout"] = ct_env if ct_env is not None else 10

    ka_env = os.environ.get("DB_KEEPALIVES")
    if ka_env is None:
        kwargs["keepalives"] = 1
    else:
        kwargs["keepalives"] = 0 if str(ka_env).lower() in ("0", "false") else 1

    for suffix in ("IDLE", "INTERVAL", "COUNT"):
        val = _env_int(f"DB_KEEPALIVES_{suffix}")
        if val is not None:
            kwargs[f"keepalives_{suffix.lower()}"] = val
    return kwargs


def init_pool(minconn: int = 1, maxconn: int = 10) -> None:
    """Initialize a global connection pool using DATABASE_URL.

    Safe to call multiple times; subsequent calls are ignored once a pool exists.
    """
    global _POOL
    if _POOL is not None:
        return
    url = os.environ.get("DATABASE_URL")
    if not url:
        return
    _POOL = pg_pool.ThreadedConnectionPool(minconn, maxconn, dsn=url, **_connect_kwargs())


@contextmanager
def _get_conn():
    """Yield a pooled connection if a pool exists, else a direct one.

    A pooled connection that fails a ``SELECT 1`` ping is discarded and one
    more is tried before giving up. Connections are rolled back on error and
    never handed back mid-transaction.
    """
    url = os.environ.get("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL not set; configure a PostgreSQL connection string")
    if _POOL is None:
        conn = psycopg2.connect(url, **_connect_kwargs())
        try:
            try:
                yield conn
            except Exception:
                conn.rollback()
                raise
        finally:
            conn.close()
        return

    conn = None
    for attempt in range(2):
        conn = _POOL.getconn()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
            conn.rollback()
            break
        except (psycopg2.OperationalError, psycopg2.InterfaceError):
            _POOL.putconn(conn, close=True)
            conn = None
            if attempt:
                raise psycopg2.OperationalError("Failed to acquire healthy DB connection after retry")
    try:
        try:
            yield conn
        except Exception:
            conn.rollback()
            raise
    finally:
        # status 0 = idle; anything else means an open transaction
        if conn.closed == 0 and not conn.autocommit and conn.status != 0:
            conn.rollback()
        _POOL.putconn(conn)


def ensure_schema() -> None:
    """Create the race tables when they do not exist yet."""
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS races (
                id SERIAL PRIMARY KEY,
                race_id VARCHAR(100) UNIQUE NOT NULL,
                name VARCHAR(200),
                date DATE,
                status VARCHAR(20) NOT NULL DEFAULT 'setup',
                start_time BIGINT,
                race_5k_active BOOLEAN NOT NULL DEFAULT TRUE,
                race_10k_active BOOLEAN NOT NULL DEFAULT TRUE,
                next_temp_number INTEGER NOT NULL DEFAULT 999,
                checkin_count INTEGER NOT NULL DEFAULT 0
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS race_runners (
                id SERIAL PRIMARY KEY,
                race_id VARCHAR(100) REFERENCES races(race_id) ON DELETE CASCADE,
                roster_index INTEGER NOT NULL,
                member_number INTEGER NOT NULL,
                full_name VARCHAR(200),
                distance VARCHAR(10) NOT NULL,
                current_handicap_5k VARCHAR(10),
                current_handicap_10k VARCHAR(10),
                handicap_status VARCHAR(20),
                checked_in BOOLEAN NOT NULL DEFAULT FALSE,
                checkin_order INTEGER,
                status VARCHAR(20),
                finish_time_ms BIGINT,
                manual_override BOOLEAN NOT NULL DEFAULT FALSE,
                new_handicap VARCHAR(10),
                finish_position INTEGER,
                points_earned DOUBLE PRECISION,
                UNIQUE(race_id, member_number)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
                id SERIAL PRIMARY KEY,
                version INTEGER,
                updated_at TIMESTAMP,
                config JSONB
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_race_runners_race ON race_runners(race_id)")
        conn.commit()


def _race_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    date = row.get("date")
    return {
        "id": row["race_id"],
        "name": row.get("name"),
        "date": date.isoformat() if date else None,
        "status": row.get("status"),
        "start_time": row.get("start_time"),
        "race_5k_active": bool(row.get("race_5k_active")),
        "race_10k_active": bool(row.get("race_10k_active")),
        "next_temp_number": row.get("next_temp_number"),
        "checkin_count": row.get("checkin_count") or 0,
        "runners": [],
    }


def _runner_from_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "member_number": row["member_number"],
        "full_name": row.get("full_name"),
        "distance": row.get("distance"),
        "current_handicap_5k": row.get("current_handicap_5k") or "",
        "current_handicap_10k": row.get("current_handicap_10k") or "",
        "handicap_status": row.get("handicap_status") or "official",
        "checked_in": bool(row.get("checked_in")),
        "checkin_order": row.get("checkin_order"),
        "status": row.get("status") or "not_started",
        "finish_time": row.get("finish_time_ms"),
        "manual_override": bool(row.get("manual_override")),
        "new_handicap": row.get("new_handicap"),
        "finish_position": row.get("finish_position"),
        "points_earned": row.get("points_earned") or 0,
    }


def load_race(race_id: str) -> Optional[Dict[str, Any]]:
    """Return the race with its roster in roster order, or ``None``."""
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        cur.execute(f"SELECT {', '.join(_RACE_COLUMNS)} FROM races WHERE race_id = %s", (race_id,))
        row = cur.fetchone()
        if not row:
            return None
        race = _race_from_row(row)
        cur.execute(
            "SELECT * FROM race_runners WHERE race_id = %s ORDER BY roster_index, id",
            (race_id,),
        )
        race["runners"] = [_runner_from_row(r) for r in cur.fetchall()]
    return race


def save_race(race: Dict[str, Any]) -> None:
    """Upsert the race row and its roster; runners no longer listed are removed."""
    race_id = str(race["id"])
    race_row = (
        race_id,
        race.get("name"),
        race.get("date"),
        race.get("status"),
        race.get("start_time"),
        bool(race.get("race_5k_active", True)),
        bool(race.get("race_10k_active", True)),
        race.get("next_temp_number"),
        race.get("checkin_count") or 0,
    )
    runner_rows: List[Tuple[Any, ...]] = []
    for idx, r in enumerate(race.get("runners", []) or []):
        runner_rows.append(
            (
                race_id, idx, int(r["member_number"]), r.get("full_name"), r.get("distance"),
                r.get("current_handicap_5k") or None, r.get("current_handicap_10k") or None,
                r.get("handicap_status"), bool(r.get("checked_in")), r.get("checkin_order"),
                r.get("status"), r.get("finish_time"), bool(r.get("manual_override")),
                r.get("new_handicap"), r.get("finish_position"), r.get("points_earned"),
            )
        )

    with _get_conn() as conn, conn.cursor() as cur:
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in _RACE_COLUMNS[1:])
        cur.execute(
            f"""
            INSERT INTO races ({', '.join(_RACE_COLUMNS)})
            VALUES ({', '.join(['%s'] * len(_RACE_COLUMNS))})
            ON CONFLICT (race_id) DO UPDATE SET {updates}
            """,
            race_row,
        )
        members = [row[2] for row in runner_rows]
        cur.execute(
            "DELETE FROM race_runners WHERE race_id = %s AND NOT (member_number = ANY(%s))",
            (race_id, members),
        )
        if runner_rows:
            runner_updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in _RUNNER_COLUMNS[3:] + ("roster_index",))
            execute_values(
                cur,
                f"""
                INSERT INTO race_runners ({', '.join(_RUNNER_COLUMNS)})
                VALUES %s
                ON CONFLICT (race_id, member_number) DO UPDATE SET {runner_updates}
                """,
                runner_rows,
            )
        conn.commit()


def delete_race(race_id: str) -> None:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM races WHERE race_id = %s", (race_id,))
        conn.commit()


def list_races() -> List[Dict[str, Any]]:
    """Race summaries, most recent first."""
    out: List[Dict[str, Any]] = []
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        try:
            cur.execute(
                f"""
                SELECT {', '.join('r.' + c for c in _RACE_COLUMNS)},
                       COUNT(rr.id) FILTER (WHERE rr.checked_in) AS checked_in,
                       COUNT(rr.id) FILTER (WHERE rr.finish_time_ms IS NOT NULL) AS finishers
                FROM races r LEFT JOIN race_runners rr ON rr.race_id = r.race_id
                GROUP BY r.id
                ORDER BY r.date DESC NULLS LAST, r.race_id
                """
            )
        except pg_errors.UndefinedTable:
            return []
        for row in cur.fetchall():
            race = _race_from_row(row)
            race.pop("runners")
            race["checked_in"] = row.get("checked_in") or 0
            race["finishers"] = row.get("finishers") or 0
            out.append(race)
    return out


def get_settings() -> Dict[str, Any]:
    with _get_conn() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
        try:
            cur.execute("SELECT config FROM settings ORDER BY id DESC LIMIT 1")
        except pg_errors.UndefinedTable:
            return {}
        row = cur.fetchone()
        if row and row.get("config"):
            return row["config"]
        return {}


def set_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
    with _get_conn() as conn, conn.cursor() as cur:
        cur.execute("DELETE FROM settings")
        cur.execute(
            "INSERT INTO settings (version, updated_at, config) VALUES (%s, %s, %s)",
            (settings.get("version"), settings.get("updated_at"), json.dumps(settings)),
        )
        conn.commit()
    return settings
