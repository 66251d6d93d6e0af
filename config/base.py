# config/base.py

"""
Application settings, read once from the environment at import time.

Malformed numeric values fall back to their defaults instead of failing the
import; ``config.validation`` reports them at production start-up.
"""

import os
import warnings

_CONFIG_DIR = os.path.dirname(os.path.abspath(__file__))
_PROJECT_ROOT = os.path.dirname(_CONFIG_DIR)

DEV_SECRET_KEY = "dev-secret-key-change-in-production"
TEST_SECRET_KEY = "test-secret-key-for-testing-only"


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_name_list(value):
    """Comma-separated names, lowercased, first occurrence kept."""
    names = []
    for raw in (value or "").split(","):
        name = raw.strip().lower()
        if name and name not in names:
            names.append(name)
    return tuple(names)


def _parse_float(value, default, *, minimum=0.0, maximum=1.0):
    if value is None or value == "":
        return default
    try:
        number = float(value)
    except ValueError:
        return default
    if number < minimum or number > maximum:
        return default
    return number


def _parse_int(value, default, *, minimum=1):
    if value is None or value == "":
        return default
    try:
        return max(minimum, int(value))
    except ValueError:
        return default


def _env(name, default=None):
    return os.environ.get(name, default)


def _resolve_secret_key(flask_env):
    """Production must provide SECRET_KEY; other environments get a placeholder."""
    secret_key = _env("SECRET_KEY")
    if secret_key:
        return secret_key
    if flask_env == "production":
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    if flask_env == "testing":
        return TEST_SECRET_KEY
    warnings.warn(
        "SECRET_KEY not set. Using default for development only. Set SECRET_KEY before deploying.",
        UserWarning,
    )
    return DEV_SECRET_KEY


def _sqlite_uri(filename):
    """File-backed SQLite URI under ``instance/``; forward slashes on every platform."""
    instance_path = os.path.join(_PROJECT_ROOT, "instance")
    os.makedirs(instance_path, exist_ok=True)
    return "sqlite:///" + os.path.join(instance_path, filename).replace("\\", "/")


def _engine_options(uri):
    # Sync worker threads share the file with request threads.
    if uri and uri.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": 5}}
    return {}


def _normalize_database_url(uri):
    if uri and uri.startswith("postgres://"):
        return uri.replace("postgres://", "postgresql://", 1)
    return uri


class Config:
    FLASK_ENV = _env("FLASK_ENV", "development")
    SECRET_KEY = _resolve_secret_key(FLASK_ENV)

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Identity resolution
    IDENTITY_ENABLED = _coerce_bool(_env("IDENTITY_ENABLED"), default=True)
    IDENTITY_SOURCES = _parse_name_list(_env("IDENTITY_SOURCES", "crm,ecom,email_platform"))
    IDENTITY_REVIEW_THRESHOLD = _parse_float(_env("IDENTITY_REVIEW_THRESHOLD"), 0.85)
    IDENTITY_AUTO_APPLY_ENABLED = _coerce_bool(_env("IDENTITY_AUTO_APPLY_ENABLED"), default=True)
    IDENTITY_AUTO_APPLY_THRESHOLD = _parse_float(_env("IDENTITY_AUTO_APPLY_THRESHOLD"), 0.90)
    IDENTITY_CANDIDATE_BATCH_SIZE = _parse_int(_env("IDENTITY_CANDIDATE_BATCH_SIZE"), 500)
    IDENTITY_CANDIDATES_MAX_PAGE_SIZE = _parse_int(_env("IDENTITY_CANDIDATES_MAX_PAGE_SIZE"), 500)
    IDENTITY_CANDIDATES_PAGE_SIZE = min(
        _parse_int(_env("IDENTITY_CANDIDATES_PAGE_SIZE"), 50), IDENTITY_CANDIDATES_MAX_PAGE_SIZE
    )
    IDENTITY_COMMON_NAME_THRESHOLD = _parse_int(_env("IDENTITY_COMMON_NAME_THRESHOLD"), 3, minimum=2)
    # Empty means the built-in list of consumer mailbox providers.
    IDENTITY_FREE_EMAIL_DOMAINS = _parse_name_list(_env("IDENTITY_FREE_EMAIL_DOMAINS"))

    POLICY_CACHE_TTL_SECONDS = _parse_int(_env("POLICY_CACHE_TTL_SECONDS"), 120, minimum=0)

    # Background worker
    IDENTITY_WORKER_ENABLED = _coerce_bool(_env("IDENTITY_WORKER_ENABLED"), default=False)
    IDENTITY_TASK_TIME_LIMIT = _parse_int(_env("IDENTITY_TASK_TIME_LIMIT"), 15 * 60)
    IDENTITY_TASK_SOFT_TIME_LIMIT = _parse_int(_env("IDENTITY_TASK_SOFT_TIME_LIMIT"), 12 * 60)
    # an apply claimed longer ago than this is treated as interrupted
    IDENTITY_APPLY_STALE_SECONDS = _parse_int(_env("IDENTITY_APPLY_STALE_SECONDS"), 15 * 60, minimum=0)
    CELERY_BROKER_URL = _env("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = _env("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = _env("CELERY_SQLITE_PATH")
    CELERY_CONFIG = _env("CELERY_CONFIG")

    # Sync
    SYNC_STREAM_TIMEOUT_SECONDS = _parse_int(_env("SYNC_STREAM_TIMEOUT_SECONDS"), 300)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _env("DATABASE_URL") or _sqlite_uri("meridian_dev.db")
    SQLALCHEMY_ECHO = _coerce_bool(_env("SQLALCHEMY_ECHO"), default=False)
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI)


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = _env("SECRET_KEY", TEST_SECRET_KEY)
    # Test runs point this at a temp file so worker threads get their own connections
    SQLALCHEMY_DATABASE_URI = _env("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI)
    IDENTITY_WORKER_ENABLED = False
    POLICY_CACHE_TTL_SECONDS = 120


class ProductionConfig(Config):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(_env("DATABASE_URL"))
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, **_engine_options(SQLALCHEMY_DATABASE_URI)}
    SESSION_COOKIE_SECURE = True
