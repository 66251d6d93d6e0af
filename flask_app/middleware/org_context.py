# flask_app/middleware/org_context.py

"""
Per-request tenant and actor resolution.

The organization comes from ``X-Org-Id``/``X-Org-Slug`` headers, the
``org_id``/``org_slug`` query arguments or an ``/org/<slug>/`` path prefix.
Inactive organizations are treated as unknown.
"""

from functools import wraps

from flask import current_app, g, jsonify, request

from flask_app.models import Organization

ORG_ID_HEADER = "X-Org-Id"
ORG_SLUG_HEADER = "X-Org-Slug"
ACTOR_HEADER = "X-Actor-Id"
ACTOR_TYPE_HEADER = "X-Actor-Type"

# endpoints that never need a tenant
PUBLIC_ENDPOINTS = frozenset({"static", "api.health", "api.metrics"})


def get_current_organization():
    return getattr(g, "current_organization", None)


def set_current_organization(organization):
    g.current_organization = organization


def get_current_actor():
    return getattr(g, "current_actor", None)


def get_current_actor_type():
    return getattr(g, "current_actor_type", None)


def _requested_identifiers():
    org_id = request.headers.get(ORG_ID_HEADER) or request.args.get("org_id")
    org_slug = request.headers.get(ORG_SLUG_HEADER) or request.args.get("org_slug")
    if not (org_id or org_slug):
        segments = request.path.strip("/").split("/")
        if len(segments) > 1 and segments[0] == "org":
            org_slug = segments[1]
    return org_id, org_slug


def _resolve_organization():
    org_id, org_slug = _requested_identifiers()

    organization = None
    if org_id:
        if org_id.strip().isdigit():
            organization = Organization.find_by_id(int(org_id))
        else:
            current_app.logger.warning("Ignoring malformed organization id %r", org_id)
    if organization is None and org_slug:
        organization = Organization.find_by_slug(org_slug)

    if organization is not None and not organization.is_active:
        current_app.logger.warning("Rejected request for inactive organization %s", organization.id)
        return None
    return organization


def init_org_context_middleware(app):
    @app.before_request
    def load_request_context():
        g.current_actor = request.headers.get(ACTOR_HEADER) or None
        g.current_actor_type = request.headers.get(ACTOR_TYPE_HEADER) or None
        set_current_organization(None if request.endpoint in PUBLIC_ENDPOINTS else _resolve_organization())


def require_organization_context(view):
    """Answer 400 ``organization_required`` unless an active organization was resolved."""

    @wraps(view)
    def wrapper(*args, **kwargs):
        if get_current_organization() is None:
            body = {
                "error": "An active organization is required (X-Org-Id or X-Org-Slug header).",
                "code": "organization_required",
            }
            return jsonify(body), 400
        return view(*args, **kwargs)

    return wrapper
