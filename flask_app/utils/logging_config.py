# flask_app/utils/logging_config.py

"""
Application logging setup.

``LOG_FORMAT=json`` renders one JSON object per line, including any
``extra={...}`` fields passed to the logger; ``text`` keeps the classic
single-line format for local development.
"""

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class JSONFormatter(logging.Formatter):
    """Structured formatter used in production."""

    def __init__(self, app_name=None, app_version=None):
        super().__init__()
        self.app_name = app_name
        self.app_version = app_version

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if self.app_name:
            payload["app"] = self.app_name
        if self.app_version:
            payload["version"] = self.app_version
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter(app):
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter(app.config.get("APP_NAME"), app.config.get("APP_VERSION"))
    return logging.Formatter(TEXT_FORMAT)


def setup_logging(app):
    """Configure ``app.logger`` from LOG_* settings."""
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    formatter = _build_formatter(app)

    for handler in list(app.logger.handlers):
        if getattr(handler, "_meridian_handler", False):
            app.logger.removeHandler(handler)

    handlers = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        handlers.append(logging.StreamHandler())

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        try:
            os.makedirs(log_dir, exist_ok=True)
            handlers.append(
                RotatingFileHandler(
                    os.path.join(log_dir, "app.log"),
                    maxBytes=app.config.get("LOG_FILE_MAX_BYTES", 10485760),
                    backupCount=app.config.get("LOG_FILE_BACKUP_COUNT", 10),
                )
            )
        except OSError as e:
            app.logger.warning(f"File logging disabled, could not open {log_dir}: {e}")

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler._meridian_handler = True
        app.logger.addHandler(handler)

    app.logger.setLevel(level)
    return app.logger
