"""
Celery wiring for background identity work.

Without ``CELERY_BROKER_URL``/``CELERY_RESULT_BACKEND`` the worker uses a
SQLite file in the instance folder for both transport and results, so
resolution runs and connector syncs can be queued without a Redis server.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "identity"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
EXTENSION_KEY = "identity"
TASK_MODULES = ("flask_app.identity.tasks",)

_WORKER_LOG_FORMAT = "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s"
_WORKER_TASK_LOG_FORMAT = "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"


def _sqlite_store(app: Flask) -> str:
    """POSIX path of the SQLite file shared by the default broker and backend."""
    target = Path(app.config.get("CELERY_SQLITE_PATH") or DEFAULT_SQLITE_FILENAME)
    if not target.is_absolute():
        target = Path(app.instance_path) / target
    target.parent.mkdir(parents=True, exist_ok=True)
    return target.as_posix()


def resolve_celery_urls(app: Flask) -> tuple[str, str]:
    broker = app.config.get("CELERY_BROKER_URL")
    backend = app.config.get("CELERY_RESULT_BACKEND")
    if not (broker and backend):
        store = _sqlite_store(app)
        broker = broker or f"sqla+sqlite:///{store}"
        backend = backend or f"db+sqlite:///{store}"
    return broker, backend


def _overrides(app: Flask) -> dict[str, Any]:
    """``CELERY_CONFIG`` as a mapping; accepts a dict or a JSON object string."""
    raw = app.config.get("CELERY_CONFIG")
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            app.logger.warning("Ignoring CELERY_CONFIG: not valid JSON", exc_info=True)
            return {}
    if not isinstance(raw, dict):
        app.logger.warning("Ignoring CELERY_CONFIG: expected an object, got %s", type(raw).__name__)
        return {}
    return raw


def _worker_settings(app: Flask) -> dict[str, Any]:
    return {
        "task_default_queue": DEFAULT_QUEUE_NAME,
        "task_default_exchange": DEFAULT_QUEUE_NAME,
        "task_default_routing_key": DEFAULT_QUEUE_NAME,
        "task_queues": [Queue(DEFAULT_QUEUE_NAME)],
        # one task at a time; a crashed worker hands the task back
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
        "task_track_started": True,
        "result_extended": True,
        "broker_connection_retry_on_startup": True,
        "task_time_limit": app.config.get("IDENTITY_TASK_TIME_LIMIT", 15 * 60),
        "task_soft_time_limit": app.config.get("IDENTITY_TASK_SOFT_TIME_LIMIT", 12 * 60),
        "worker_hijack_root_logger": False,
        "worker_log_format": _WORKER_LOG_FORMAT,
        "worker_task_log_format": _WORKER_TASK_LOG_FORMAT,
    }


def create_celery_app(app: Flask) -> Celery:
    """Build the Celery app for ``app``; every task body runs inside its app context."""
    broker, backend = resolve_celery_urls(app)
    celery_app = Celery(app.import_name, broker=broker, backend=backend, include=TASK_MODULES)
    celery_app.conf.update(_worker_settings(app))
    celery_app.conf.update(_overrides(app))

    class FlaskContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = FlaskContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    app.logger.info(
        "Identity worker configured",
        extra={
            "celery_broker": broker,
            "celery_backend": backend,
            "identity_worker_enabled": app.config.get("IDENTITY_WORKER_ENABLED"),
        },
    )
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """Celery app registered on ``app``, created lazily while identity is enabled."""
    state = app.extensions.get(EXTENSION_KEY)
    if not state:
        return None
    if state.get("celery_app") is None and state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")
