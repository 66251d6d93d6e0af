"""
Tenant-aware settings for identity resolution.

Application config supplies defaults; organization feature flags override
them per tenant.
"""

from __future__ import annotations

from flask import current_app

from flask_app.identity.pipeline.normalize import DEFAULT_FREE_EMAIL_DOMAINS
from flask_app.identity.pipeline.tiers import (
    DEFAULT_COMMON_NAME_THRESHOLD,
    DEFAULT_REVIEW_THRESHOLD,
    MatchSettings,
)
from flask_app.identity.store import resolve_source_types
from flask_app.models import OrganizationFeatureFlag, SourceType

REVIEW_THRESHOLD_FLAG = "identity_review_threshold"
AUTO_APPLY_ENABLED_FLAG = "identity_auto_apply_enabled"
AUTO_APPLY_THRESHOLD_FLAG = "identity_auto_apply_threshold"

DEFAULT_AUTO_APPLY_THRESHOLD = 0.90


def _clamp_unit(value, fallback: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if number < 0.0 or number > 1.0:
        return fallback
    return number


def get_review_threshold(organization_id: int | None = None) -> float:
    """Confidence below which candidates are flagged for human review."""
    default = _clamp_unit(current_app.config.get("IDENTITY_REVIEW_THRESHOLD", DEFAULT_REVIEW_THRESHOLD), DEFAULT_REVIEW_THRESHOLD)
    if organization_id is None:
        return default
    return _clamp_unit(OrganizationFeatureFlag.get_flag(organization_id, REVIEW_THRESHOLD_FLAG, default), default)


def get_auto_apply_settings(organization_id: int) -> tuple[bool, float]:
    """Return (enabled, minimum confidence) for post-sync auto-apply."""
    enabled_default = bool(current_app.config.get("IDENTITY_AUTO_APPLY_ENABLED", True))
    threshold_default = _clamp_unit(
        current_app.config.get("IDENTITY_AUTO_APPLY_THRESHOLD", DEFAULT_AUTO_APPLY_THRESHOLD),
        DEFAULT_AUTO_APPLY_THRESHOLD,
    )
    enabled = OrganizationFeatureFlag.get_flag(organization_id, AUTO_APPLY_ENABLED_FLAG, enabled_default)
    threshold = OrganizationFeatureFlag.get_flag(organization_id, AUTO_APPLY_THRESHOLD_FLAG, threshold_default)
    return bool(enabled), _clamp_unit(threshold, threshold_default)


def get_configured_sources() -> tuple[SourceType, ...]:
    return resolve_source_types(current_app.config.get("IDENTITY_SOURCES") or ())


def build_match_settings(organization_id: int | None = None) -> MatchSettings:
    free_domains = current_app.config.get("IDENTITY_FREE_EMAIL_DOMAINS") or DEFAULT_FREE_EMAIL_DOMAINS
    try:
        common_name_threshold = max(
            2, int(current_app.config.get("IDENTITY_COMMON_NAME_THRESHOLD", DEFAULT_COMMON_NAME_THRESHOLD))
        )
    except (TypeError, ValueError):
        common_name_threshold = DEFAULT_COMMON_NAME_THRESHOLD
    return MatchSettings(
        review_threshold=get_review_threshold(organization_id),
        common_name_threshold=common_name_threshold,
        free_email_domains=frozenset(domain.lower() for domain in free_domains),
    )


def get_candidate_batch_size() -> int:
    try:
        return max(1, int(current_app.config.get("IDENTITY_CANDIDATE_BATCH_SIZE", 500)))
    except (TypeError, ValueError):
        return 500
