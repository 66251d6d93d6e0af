# config/monitoring.py

import os

from prometheus_client import Counter, Histogram

from .base import _coerce_bool, _parse_int


class MonitoringConfig:
    """Logging settings plus the name/version stamped on JSON log lines"""

    APP_NAME = os.environ.get("APP_NAME", "Meridian Workspace")
    APP_VERSION = os.environ.get("APP_VERSION", "0.4.0")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    # "json" or "text"
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json").lower()
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = _parse_int(os.environ.get("LOG_FILE_MAX_BYTES"), 10 * 1024 * 1024)
    LOG_FILE_BACKUP_COUNT = _parse_int(os.environ.get("LOG_FILE_BACKUP_COUNT"), 10)
    ENABLE_FILE_LOGGING = _coerce_bool(os.environ.get("ENABLE_FILE_LOGGING"), default=True)
    ENABLE_CONSOLE_LOGGING = _coerce_bool(os.environ.get("ENABLE_CONSOLE_LOGGING"), default=True)


class DevelopmentMonitoringConfig(MonitoringConfig):
    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"


class ProductionMonitoringConfig(MonitoringConfig):
    # stdout is collected by the container runtime
    LOG_FORMAT = "json"
    ENABLE_CONSOLE_LOGGING = False


class TestingMonitoringConfig(MonitoringConfig):
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30)
_REQUEST_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5)


class IdentityMonitoring:
    """Prometheus metric helpers for identity resolution, policies and sync."""

    RUNS_COUNTER = Counter(
        "identity_resolution_runs_total",
        "Identity resolution computes by resulting run status.",
        labelnames=("status",),
    )
    COMPUTE_LATENCY = Histogram(
        "identity_resolution_compute_seconds",
        "Wall time of identity resolution computes.",
        buckets=_LATENCY_BUCKETS,
    )
    CANDIDATES_COUNTER = Counter(
        "identity_resolution_candidates_total",
        "Match candidates staged, by tier.",
        labelnames=("tier",),
    )
    APPLY_COUNTER = Counter(
        "identity_resolution_applies_total",
        "Applied runs by resulting status.",
        labelnames=("status",),
    )
    APPLY_EDGES_COUNTER = Counter(
        "identity_resolution_apply_edges_total",
        "Candidates processed during apply, by outcome.",
        labelnames=("outcome",),
    )
    REVERSE_COUNTER = Counter(
        "identity_resolution_reversals_total",
        "Reversed resolution runs.",
    )
    CANDIDATES_LIST_LATENCY = Histogram(
        "identity_candidates_list_request_seconds",
        "Latency histogram for the candidates list API.",
        labelnames=("status",),
        buckets=_REQUEST_BUCKETS,
    )
    POLICY_DECISIONS_COUNTER = Counter(
        "policy_decisions_total",
        "Policy engine decisions by effect.",
        labelnames=("effect",),
    )
    SYNC_STEPS_COUNTER = Counter(
        "sync_steps_total",
        "Connector sync steps by connector and outcome.",
        labelnames=("connector", "status"),
    )

    @classmethod
    def record_compute(cls, *, status: str, duration_seconds: float, by_tier: dict[str, int] | None = None):
        cls.RUNS_COUNTER.labels(status=status).inc()
        cls.COMPUTE_LATENCY.observe(max(duration_seconds, 0.0))
        for tier, count in (by_tier or {}).items():
            if count:
                cls.CANDIDATES_COUNTER.labels(tier=tier).inc(count)

    @classmethod
    def record_apply(cls, *, status: str, edges_created: int, edges_existing: int, errors: int):
        cls.APPLY_COUNTER.labels(status=status).inc()
        cls.APPLY_EDGES_COUNTER.labels(outcome="created").inc(max(edges_created, 0))
        cls.APPLY_EDGES_COUNTER.labels(outcome="existing").inc(max(edges_existing, 0))
        cls.APPLY_EDGES_COUNTER.labels(outcome="error").inc(max(errors, 0))

    @classmethod
    def record_reverse(cls):
        cls.REVERSE_COUNTER.inc()

    @classmethod
    def record_candidates_list(cls, *, duration_seconds: float, status: str):
        cls.CANDIDATES_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_policy_decision(cls, effect: str):
        cls.POLICY_DECISIONS_COUNTER.labels(effect=effect).inc()

    @classmethod
    def record_sync_step(cls, *, connector: str, status: str):
        cls.SYNC_STEPS_COUNTER.labels(connector=connector, status=status).inc()
