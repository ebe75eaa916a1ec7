import os
from flask import Flask

from .alerts import AlertCapability, CommandAlertCapability


def _env_flag(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return str(val).strip().lower() not in ("0", "false", "no", "off", "")


def create_app():
    app = Flask(__name__)

    db_url = os.environ.get("DATABASE_URL")
    if not db_url:
        raise RuntimeError(
            "DATABASE_URL is required. Race records are stored in PostgreSQL."
        )

    # Initialize connection pool early (optional; direct connect works if pool init fails)
    from . import datastore_pg as _pg
    try:
        try:
            minconn = int(os.environ.get("DB_POOL_MIN", "1"))
        except ValueError:
            minconn = 1
        try:
            maxconn = int(os.environ.get("DB_POOL_MAX", "10"))
        except ValueError:
            maxconn = 10
        _pg.init_pool(minconn=minconn, maxconn=maxconn)
        _pg.ensure_schema()
    except Exception:  # pragma: no cover
        app.logger.exception("PostgreSQL initialization failed; continuing without pool")

    from . import policy
    from .datastore import get_settings
    try:
        policy.configure(get_settings() or None)
        app.logger.info("Loaded policy settings version %s", policy.current_settings().get("version"))
    except Exception:  # pylint: disable=broad-except
        app.logger.exception("Error loading stored settings; using shipped defaults")
        policy.configure(None)

    # One audio capability per process, shared by every race's dispatcher
    command = os.environ.get("RACEDAY_ALERT_COMMAND")
    capability = CommandAlertCapability(command) if command else AlertCapability()
    app.extensions["raceday"] = {
        "capability": capability,
        "testing_mode": _env_flag("RACEDAY_TESTING_MODE", False),
        "alerts_enabled": _env_flag("RACEDAY_ALERTS_ENABLED", True),
        "ticker_enabled": _env_flag("RACEDAY_TICKER", True),
    }
    if app.extensions["raceday"]["testing_mode"]:
        app.logger.info("Testing mode: race clock runs 10x")

    from . import routes  # type: ignore
    app.register_blueprint(routes.bp)

    return app
