# flask_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .feature_flag import OrganizationFeatureFlag, SystemFeatureFlag
from .identity import (
    PERSON_ENTITY_TYPE,
    SAME_PERSON_RELATION,
    AuditEvent,
    CandidateStatus,
    GraphEdge,
    GraphNode,
    IdentityLink,
    MatchCandidate,
    MatchTier,
    ResolutionRun,
    ResolutionRunStatus,
)
from .organization import Organization
from .policy import ActionPolicy, PolicyEffect
from .sources import SOURCE_MODELS, CrmContact, EcomCustomer, EmailProfile, SourceType

__all__ = [
    "db",
    "BaseModel",
    "Organization",
    "OrganizationFeatureFlag",
    "SystemFeatureFlag",
    # Source records
    "SourceType",
    "SOURCE_MODELS",
    "CrmContact",
    "EcomCustomer",
    "EmailProfile",
    # Identity resolution
    "PERSON_ENTITY_TYPE",
    "SAME_PERSON_RELATION",
    "ResolutionRun",
    "ResolutionRunStatus",
    "MatchCandidate",
    "MatchTier",
    "CandidateStatus",
    "GraphNode",
    "GraphEdge",
    "IdentityLink",
    "AuditEvent",
    # Policies
    "ActionPolicy",
    "PolicyEffect",
]
