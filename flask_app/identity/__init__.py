"""
Identity resolution feature package.

Mounts the identity API blueprint and CLI group, resolves the configured
sources and prepares the Celery worker, recording its state inside
``app.extensions['identity']``.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from flask_app.policy.engine import get_policy_cache

from .celery_app import EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import identity_cli
from .errors import (
    IdentityResolutionError,
    NotFoundError,
    PartialApplyError,
    SourceReadError,
    StateConflictError,
    ValidationError,
)
from .pipeline.applier import ApplyResult, apply_resolution, recover_interrupted_applies
from .pipeline.candidate_service import CandidateFilters, CandidateService
from .pipeline.post_sync import trigger_post_sync_resolution
from .pipeline.resolver import ComputeResult, compute_resolution
from .pipeline.reverser import ReverseResult, reverse_resolution
from .store import resolve_source_types
from .views import identity_blueprint

__all__ = [
    "init_identity",
    "EXTENSION_KEY",
    "get_celery_app",
    "compute_resolution",
    "apply_resolution",
    "reverse_resolution",
    "recover_interrupted_applies",
    "trigger_post_sync_resolution",
    "CandidateFilters",
    "CandidateService",
    "ComputeResult",
    "ApplyResult",
    "ReverseResult",
    "IdentityResolutionError",
    "NotFoundError",
    "PartialApplyError",
    "SourceReadError",
    "StateConflictError",
    "ValidationError",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        EXTENSION_KEY,
        {
            "enabled": False,
            "sources": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def init_identity(app: Flask) -> None:
    """Register identity routes, CLI and worker state on ``app``."""
    state = _ensure_extension_state(app)
    enabled = bool(app.config.get("IDENTITY_ENABLED", True))
    sources = resolve_source_types(app.config.get("IDENTITY_SOURCES") or ())
    state.update(
        {
            "enabled": enabled,
            "sources": tuple(source.value for source in sources),
            "worker_enabled": bool(app.config.get("IDENTITY_WORKER_ENABLED", False)),
        }
    )
    get_policy_cache(app)

    if identity_cli.name in app.cli.commands:
        app.cli.commands.pop(identity_cli.name)
    app.cli.add_command(identity_cli)

    if not enabled:
        app.logger.info("Identity resolution disabled via IDENTITY_ENABLED flag; skipping registration.")
        return

    ensure_celery_app(app, state)
    if identity_blueprint.name not in app.blueprints:
        app.register_blueprint(identity_blueprint)
    app.logger.info("Identity resolution enabled for sources: %s", ", ".join(state["sources"]))
