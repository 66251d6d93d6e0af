# app.py

import logging
import os

from dotenv import load_dotenv
from flask import Flask
from sqlalchemy import event

# .env must be loaded before config reads the environment
load_dotenv()

from config import get_config_classes  # noqa: E402
from config.validation import validate_and_exit  # noqa: E402
from flask_app.identity import init_identity  # noqa: E402
from flask_app.middleware.org_context import init_org_context_middleware  # noqa: E402
from flask_app.models import db  # noqa: E402
from flask_app.routes import init_routes  # noqa: E402
from flask_app.utils.error_handler import init_error_handlers  # noqa: E402
from flask_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


def _sqlite_connect_hook(foreign_keys):
    def apply_pragmas(dbapi_connection, connection_record):  # pragma: no cover
        statements = SQLITE_PRAGMAS + (("PRAGMA foreign_keys=ON",) if foreign_keys else ())
        cursor = dbapi_connection.cursor()
        try:
            for statement in statements:
                cursor.execute(statement)
        except Exception as exc:
            logger.warning("Could not apply SQLite pragmas: %s", exc)
        finally:
            cursor.close()

    return apply_pragmas


def _configure_database(flask_app):
    """Attach SQLite pragmas once per engine; create tables outside of tests."""
    testing = flask_app.config.get("TESTING", False)
    with flask_app.app_context():
        engine = db.engine
        if engine.url.drivername.startswith("sqlite") and not getattr(engine, "_meridian_pragmas", False):
            event.listen(engine, "connect", _sqlite_connect_hook(foreign_keys=not testing))
            engine._meridian_pragmas = True  # type: ignore[attr-defined]
        if not testing:
            db.create_all()


flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    validate_and_exit(flask_env)

app = Flask(__name__)
for config_class in get_config_classes(flask_env):
    app.config.from_object(config_class)

db.init_app(app)
setup_logging(app)
init_error_handlers(app)
init_org_context_middleware(app)
_configure_database(app)

init_identity(app)
init_routes(app)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
