"""
Identity resolution models.

Runs, staged candidates, graph nodes/edges, identity links and the audit
trail written while computing, applying and reversing resolutions.
"""

from .schema import (
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

__all__ = [
    "PERSON_ENTITY_TYPE",
    "SAME_PERSON_RELATION",
    "AuditEvent",
    "CandidateStatus",
    "GraphEdge",
    "GraphNode",
    "IdentityLink",
    "MatchCandidate",
    "MatchTier",
    "ResolutionRun",
    "ResolutionRunStatus",
]
