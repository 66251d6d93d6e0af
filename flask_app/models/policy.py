# flask_app/models/policy.py

import enum

from sqlalchemy import Enum, Index

from .base import BaseModel, db


class PolicyEffect(str, enum.Enum):
    """Outcome a matching policy imposes on an action."""

    ALLOW = "allow"
    REQUIRE_APPROVAL = "require_approval"
    DENY = "deny"


class ActionPolicy(BaseModel):
    """Per-tenant trust rule for agent-initiated actions.

    ``action_pattern`` is a dotted glob such as ``crm.*`` or ``crm.deal.stage.update``.
    Lower ``priority`` numbers win.
    """

    __tablename__ = "action_policies"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organizations.id"), nullable=False, index=True)
    action_pattern = db.Column(db.String(255), nullable=False)
    conditions = db.Column(db.JSON, nullable=True)  # actor_type, min_value, max_value, fields
    effect = db.Column(Enum(PolicyEffect, name="policy_effect_enum"), nullable=False, default=PolicyEffect.ALLOW)
    approval_role = db.Column(db.String(50), nullable=True)
    priority = db.Column(db.Integer, nullable=False, default=100)
    description = db.Column(db.Text, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    __table_args__ = (Index("idx_action_policies_org_active_priority", "organization_id", "is_active", "priority"),)

    def __repr__(self):
        return f"<ActionPolicy {self.id} {self.action_pattern} -> {self.effect.value}>"
