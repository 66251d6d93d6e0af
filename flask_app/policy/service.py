"""CRUD for action policies. Every write invalidates the tenant's cached rules."""

from __future__ import annotations

from typing import Any, Mapping

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from flask_app.identity.errors import NotFoundError, ValidationError
from flask_app.models import ActionPolicy, PolicyEffect, db
from flask_app.policy.engine import PolicyCache, get_policy_cache
from flask_app.policy.patterns import compile_pattern

CONDITION_KEYS = {"actor_type", "min_value", "max_value", "fields"}
EDITABLE_FIELDS = ("action_pattern", "conditions", "effect", "approval_role", "priority", "description", "is_active")


def serialize_policy(policy: ActionPolicy) -> dict[str, Any]:
    return {
        "id": policy.id,
        "organization_id": policy.organization_id,
        "action_pattern": policy.action_pattern,
        "conditions": policy.conditions or {},
        "effect": policy.effect.value,
        "approval_role": policy.approval_role,
        "priority": policy.priority,
        "description": policy.description,
        "is_active": policy.is_active,
    }


def _validate(values: Mapping[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    if "action_pattern" in values:
        try:
            cleaned["action_pattern"] = compile_pattern(values["action_pattern"]).source
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
    if "effect" in values:
        try:
            cleaned["effect"] = PolicyEffect(str(values["effect"]).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unsupported policy effect '{values['effect']}'") from exc
    if "conditions" in values:
        conditions = values["conditions"] or {}
        if not isinstance(conditions, Mapping):
            raise ValidationError("conditions must be an object")
        unknown = set(conditions) - CONDITION_KEYS
        if unknown:
            raise ValidationError("Unsupported policy conditions: " + ", ".join(sorted(unknown)))
        if "fields" in conditions and not isinstance(conditions["fields"], Mapping):
            raise ValidationError("conditions.fields must be an object")
        cleaned["conditions"] = dict(conditions)
    if "priority" in values:
        try:
            cleaned["priority"] = int(values["priority"])
        except (TypeError, ValueError) as exc:
            raise ValidationError("priority must be an integer") from exc
    for key in ("approval_role", "description"):
        if key in values:
            cleaned[key] = values[key] or None
    if "is_active" in values:
        cleaned["is_active"] = bool(values["is_active"])
    return cleaned


class PolicyService:
    def __init__(self, session=None, cache: PolicyCache | None = None):
        self.session = session or db.session
        self.cache = cache or get_policy_cache()

    def list_policies(self, organization_id: int, *, include_inactive: bool = False) -> list[ActionPolicy]:
        stmt = select(ActionPolicy).where(ActionPolicy.organization_id == organization_id)
        if not include_inactive:
            stmt = stmt.where(ActionPolicy.is_active.is_(True))
        return list(self.session.scalars(stmt.order_by(ActionPolicy.priority.asc(), ActionPolicy.id.asc())))

    def get_policy(self, organization_id: int, policy_id: int) -> ActionPolicy:
        policy = self.session.get(ActionPolicy, policy_id)
        if policy is None or policy.organization_id != organization_id:
            raise NotFoundError(f"Policy {policy_id} not found")
        return policy

    def create_policy(self, organization_id: int, values: Mapping[str, Any]) -> ActionPolicy:
        cleaned = _validate(values)
        if "action_pattern" not in cleaned or "effect" not in cleaned:
            raise ValidationError("action_pattern and effect are required")
        policy = ActionPolicy(organization_id=organization_id, **cleaned)
        self.session.add(policy)
        self._commit(organization_id)
        return policy

    def update_policy(self, organization_id: int, policy_id: int, values: Mapping[str, Any]) -> ActionPolicy:
        policy = self.get_policy(organization_id, policy_id)
        for key, value in _validate({k: v for k, v in values.items() if k in EDITABLE_FIELDS}).items():
            setattr(policy, key, value)
        self._commit(organization_id)
        return policy

    def delete_policy(self, organization_id: int, policy_id: int) -> None:
        policy = self.get_policy(organization_id, policy_id)
        self.session.delete(policy)
        self._commit(organization_id)

    def _commit(self, organization_id: int) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.error("Policy write failed", exc_info=True, extra={"organization_id": organization_id})
            raise
        finally:
            self.cache.invalidate(organization_id)
