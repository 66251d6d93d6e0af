# flask_app/utils/feature_flags.py

from functools import wraps

from flask import current_app, jsonify

from flask_app.middleware.org_context import get_current_organization
from flask_app.models import OrganizationFeatureFlag, SystemFeatureFlag


def _request_org_id():
    organization = get_current_organization()
    return organization.id if organization else None


def get_feature_flag(flag_name, organization_id=None, default=None):
    """
    Look up a flag for a tenant, falling back to the system-wide value.

    ``organization_id`` defaults to the organization resolved for the request.
    """
    org_id = _request_org_id() if organization_id is None else organization_id
    if org_id:
        tenant_value = OrganizationFeatureFlag.get_flag(org_id, flag_name)
        if tenant_value is not None:
            return tenant_value
    return SystemFeatureFlag.get_flag(flag_name, default)


def set_feature_flag(flag_name, value, organization_id=None, flag_type="boolean", is_system_flag=False):
    """Returns False when no organization can be determined or the write fails."""
    if is_system_flag:
        return SystemFeatureFlag.set_flag(flag_name, value, flag_type)

    org_id = _request_org_id() if organization_id is None else organization_id
    if org_id is None:
        current_app.logger.error("Refusing to set flag %s without an organization context", flag_name)
        return False
    return OrganizationFeatureFlag.set_flag(org_id, flag_name, value, flag_type)


def check_feature_flag(flag_name, organization_id=None, default=False):
    value = get_feature_flag(flag_name, organization_id, default)
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def require_feature_flag(flag_name, default=True):
    """Hide a view behind a flag: disabled flags answer 404 ``feature_disabled``."""

    def decorator(view):
        @wraps(view)
        def guarded(*args, **kwargs):
            if check_feature_flag(flag_name, default=default):
                return view(*args, **kwargs)
            return jsonify({"error": "This feature is not available.", "code": "feature_disabled"}), 404

        return guarded

    return decorator
