# flask_app/routes/policies.py

"""
Action policy API: CRUD plus a decision endpoint for agent-initiated actions.
"""

from flask import Blueprint, jsonify, request

from flask_app.identity.errors import ValidationError
from flask_app.middleware.org_context import get_current_actor_type, get_current_organization, require_organization_context
from flask_app.policy import PolicyEngine, PolicyService, serialize_policy

policies_blueprint = Blueprint("policies", __name__, url_prefix="/api/policies")


def _json_body():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


@policies_blueprint.get("")
@require_organization_context
def list_policies():
    organization = get_current_organization()
    include_inactive = request.args.get("include_inactive", "").lower() in ("1", "true", "yes")
    policies = PolicyService().list_policies(organization.id, include_inactive=include_inactive)
    return jsonify({"policies": [serialize_policy(policy) for policy in policies]}), 200


@policies_blueprint.post("")
@require_organization_context
def create_policy():
    organization = get_current_organization()
    policy = PolicyService().create_policy(organization.id, _json_body())
    return jsonify(serialize_policy(policy)), 201


@policies_blueprint.patch("/<int:policy_id>")
@require_organization_context
def update_policy(policy_id):
    organization = get_current_organization()
    policy = PolicyService().update_policy(organization.id, policy_id, _json_body())
    return jsonify(serialize_policy(policy)), 200


@policies_blueprint.delete("/<int:policy_id>")
@require_organization_context
def delete_policy(policy_id):
    organization = get_current_organization()
    PolicyService().delete_policy(organization.id, policy_id)
    return "", 204


@policies_blueprint.post("/check")
@require_organization_context
def check_policy():
    """Decide whether an action may run: allow, require_approval or deny."""
    organization = get_current_organization()
    body = _json_body()
    action = body.get("action")
    if not action or not isinstance(action, str):
        raise ValidationError("action is required")
    payload = body.get("input") or {}
    if not isinstance(payload, dict):
        raise ValidationError("input must be an object")
    actor_type = body.get("actor_type") or get_current_actor_type()
    decision = PolicyEngine().check_policy(organization.id, action, payload, actor_type)
    return jsonify(decision.as_dict()), 200


def register_policy_routes(app):
    if policies_blueprint.name not in app.blueprints:
        app.register_blueprint(policies_blueprint)
