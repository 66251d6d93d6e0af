# config/validation.py

"""
Start-up checks for production environment variables.

Each check returns a list of human-readable problems; the app refuses to
start in production while any are reported.
"""

import os
import sys
from typing import Callable, List, Tuple

KNOWN_SOURCES = {"crm", "ecom", "email_platform"}
PLACEHOLDER_SECRETS = ("your-secret-key", "your_secret_key")


def _env(name: str) -> str:
    return os.environ.get(name) or ""


def _check_secret_key() -> List[str]:
    if _env("SECRET_KEY") in ("",) + PLACEHOLDER_SECRETS:
        return [
            "SECRET_KEY is required in production and must not be a placeholder. "
            'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
        ]
    return []


def _check_database_url() -> List[str]:
    if not _env("DATABASE_URL"):
        return ["DATABASE_URL is required in production (PostgreSQL connection string)."]
    return []


def _check_sources() -> List[str]:
    configured = {name.strip().lower() for name in _env("IDENTITY_SOURCES").split(",") if name.strip()}
    unknown = sorted(configured - KNOWN_SOURCES)
    if unknown:
        return [f"IDENTITY_SOURCES contains unknown sources: {', '.join(unknown)}"]
    return []


def _check_thresholds() -> List[str]:
    problems = []
    for name in ("IDENTITY_REVIEW_THRESHOLD", "IDENTITY_AUTO_APPLY_THRESHOLD"):
        raw = _env(name)
        if not raw:
            continue
        try:
            in_range = 0 <= float(raw) <= 1
        except ValueError:
            in_range = False
        if not in_range:
            problems.append(f"{name} must be a number between 0 and 1 (got {raw!r})")
    return problems


def _check_worker_broker() -> List[str]:
    if _env("IDENTITY_WORKER_ENABLED").lower() == "true" and not _env("CELERY_BROKER_URL"):
        return ["CELERY_BROKER_URL is required when IDENTITY_WORKER_ENABLED=true in production"]
    return []


PRODUCTION_CHECKS: Tuple[Callable[[], List[str]], ...] = (
    _check_secret_key,
    _check_database_url,
    _check_sources,
    _check_thresholds,
    _check_worker_broker,
)


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """Returns ``(is_valid, errors)``; only production is checked."""
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors = [problem for check in PRODUCTION_CHECKS for problem in check()]
    return not errors, errors


def validate_and_exit(flask_env: str = None) -> None:
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    rule = "=" * 80
    lines = [rule, "ENVIRONMENT VALIDATION FAILED", rule, ""]
    lines += [f"{number}. {error}" for number, error in enumerate(errors, 1)]
    lines += ["", "Check your .env file or environment variables.", rule]
    print("\n".join(lines), file=sys.stderr)
    sys.exit(1)
