"""
Policy engine for agent-initiated actions.

Rules are evaluated in priority order (lower number first) and the first rule
whose pattern and conditions match decides the outcome. When no rule matches
the action is allowed. Rules are cached per tenant in a ``PolicyCache`` that
lives in ``app.extensions``.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from config.monitoring import IdentityMonitoring
from flask_app.models import ActionPolicy, PolicyEffect, db
from flask_app.policy.patterns import CompiledPattern, compile_pattern

DEFAULT_CACHE_TTL_SECONDS = 120
DEFAULT_APPROVAL_ROLE = "admin"
VALUE_FIELDS = ("value", "amount", "deal_value")
EXTENSION_KEY = "policy_cache"


@dataclass(frozen=True)
class PolicyRule:
    """Session-independent snapshot of an active ``ActionPolicy`` row."""

    id: int
    pattern: CompiledPattern
    effect: PolicyEffect
    priority: int
    conditions: Mapping[str, Any] = field(default_factory=dict)
    approval_role: str | None = None
    description: str | None = None

    @classmethod
    def from_model(cls, policy: ActionPolicy) -> "PolicyRule":
        return cls(
            id=policy.id,
            pattern=compile_pattern(policy.action_pattern),
            effect=policy.effect,
            priority=policy.priority,
            conditions=dict(policy.conditions or {}),
            approval_role=policy.approval_role,
            description=policy.description,
        )


@dataclass(frozen=True)
class PolicyDecision:
    effect: PolicyEffect
    policy_id: int | None = None
    policy_description: str | None = None
    approval_role: str | None = None

    @property
    def allowed(self) -> bool:
        return self.effect == PolicyEffect.ALLOW

    def as_dict(self) -> dict[str, Any]:
        return {
            "effect": self.effect.value,
            "policy_id": self.policy_id,
            "policy_description": self.policy_description,
            "approval_role": self.approval_role,
        }


DEFAULT_DECISION = PolicyDecision(effect=PolicyEffect.ALLOW)


@dataclass
class _CacheEntry:
    rules: tuple[PolicyRule, ...]
    loaded_at: float


class PolicyCache:
    """Per-tenant rule cache with a fixed time-to-live."""

    def __init__(self, ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS, *, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[int, _CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, organization_id: int) -> tuple[PolicyRule, ...] | None:
        """Fresh rules for the tenant, or ``None`` when missing or expired."""
        with self._lock:
            entry = self._entries.get(organization_id)
        if entry is None or self._clock() - entry.loaded_at >= self.ttl_seconds:
            return None
        return entry.rules

    def get_stale(self, organization_id: int) -> tuple[PolicyRule, ...] | None:
        with self._lock:
            entry = self._entries.get(organization_id)
        return entry.rules if entry else None

    def put(self, organization_id: int, rules: tuple[PolicyRule, ...]) -> None:
        ordered = tuple(sorted(rules, key=lambda rule: (rule.priority, rule.id)))
        with self._lock:
            self._entries[organization_id] = _CacheEntry(rules=ordered, loaded_at=self._clock())

    def invalidate(self, organization_id: int) -> None:
        with self._lock:
            self._entries.pop(organization_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def get_policy_cache(app=None) -> PolicyCache:
    """Return the application's cache, creating it on first use."""
    app = app or current_app._get_current_object()
    cache = app.extensions.get(EXTENSION_KEY)
    if cache is None:
        cache = PolicyCache(app.config.get("POLICY_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS))
        app.extensions[EXTENSION_KEY] = cache
    return cache


def _numeric(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value))
    except ValueError:
        return None


def matches_conditions(conditions: Mapping[str, Any] | None, payload: Mapping[str, Any], actor_type: str | None) -> bool:
    """Empty conditions always match. Value bounds only apply when the payload carries a value."""
    if not conditions:
        return True

    expected_actor = conditions.get("actor_type")
    if expected_actor and expected_actor != actor_type:
        return False

    value = next((_numeric(payload.get(name)) for name in VALUE_FIELDS if payload.get(name) is not None), None)
    min_value = _numeric(conditions.get("min_value"))
    if min_value is not None and value is not None and value < min_value:
        return False
    max_value = _numeric(conditions.get("max_value"))
    if max_value is not None and value is not None and value > max_value:
        return False

    for key, expected in (conditions.get("fields") or {}).items():
        if payload.get(key) != expected:
            return False
    return True


class PolicyEngine:
    def __init__(self, cache: PolicyCache | None = None, session=None):
        self.cache = cache or get_policy_cache()
        self.session = session or db.session

    def load_rules(self, organization_id: int) -> tuple[PolicyRule, ...]:
        """Cached rules; on a load failure serve the stale entry, or nothing."""
        cached = self.cache.get(organization_id)
        if cached is not None:
            return cached
        try:
            rows = self.session.scalars(
                select(ActionPolicy)
                .where(ActionPolicy.organization_id == organization_id, ActionPolicy.is_active.is_(True))
                .order_by(ActionPolicy.priority.asc(), ActionPolicy.id.asc())
            ).all()
        except SQLAlchemyError:
            self.session.rollback()
            current_app.logger.error(
                "Policy load failed; serving cached rules", exc_info=True, extra={"organization_id": organization_id}
            )
            return self.cache.get_stale(organization_id) or ()

        rules: list[PolicyRule] = []
        for row in rows:
            try:
                rules.append(PolicyRule.from_model(row))
            except ValueError:
                current_app.logger.warning(
                    f"Skipping policy {row.id} with invalid pattern {row.action_pattern!r}",
                    extra={"organization_id": organization_id},
                )
        self.cache.put(organization_id, tuple(rules))
        return self.cache.get_stale(organization_id) or ()

    def check_policy(
        self,
        organization_id: int,
        action_name: str,
        payload: Mapping[str, Any] | None = None,
        actor_type: str | None = None,
    ) -> PolicyDecision:
        payload = payload or {}
        decision = DEFAULT_DECISION
        for rule in self.load_rules(organization_id):
            if not rule.pattern.matches(action_name):
                continue
            if not matches_conditions(rule.conditions, payload, actor_type):
                continue
            decision = PolicyDecision(
                effect=rule.effect,
                policy_id=rule.id,
                policy_description=rule.description,
                approval_role=(rule.approval_role or DEFAULT_APPROVAL_ROLE)
                if rule.effect == PolicyEffect.REQUIRE_APPROVAL
                else None,
            )
            break

        IdentityMonitoring.record_policy_decision(decision.effect.value)
        current_app.logger.debug(
            f"Policy decision for {action_name}: {decision.effect.value}",
            extra={"organization_id": organization_id, "policy_id": decision.policy_id},
        )
        return decision


def check_policy(
    organization_id: int,
    action_name: str,
    payload: Mapping[str, Any] | None = None,
    actor_type: str | None = None,
) -> PolicyDecision:
    return PolicyEngine().check_policy(organization_id, action_name, payload, actor_type)
