"""
SQLAlchemy models for identity resolution.

A resolution run stages match candidates for review; applying a run promotes
candidates into ``same_person`` graph edges and identity links, and reversing
it closes those rows out again. Nothing here is ever hard-deleted so each
run's effect stays auditable.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Enum, ForeignKey, Index, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db
from ..sources import SourceType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


SAME_PERSON_RELATION = "same_person"
PERSON_ENTITY_TYPE = "person"


class ResolutionRunStatus(str, enum.Enum):
    """Lifecycle states for a resolution run."""

    PENDING_REVIEW = "pending_review"
    # claimed by an apply that has not finished yet
    APPLYING = "applying"
    APPLIED = "applied"
    PARTIALLY_APPLIED = "partially_applied"
    REVERSED = "reversed"
    FAILED = "failed"


class CandidateStatus(str, enum.Enum):
    """Review states for a staged match candidate."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    APPLIED = "applied"


class MatchTier(str, enum.Enum):
    """Matching rules, declared from most to least precise."""

    EXACT_EMAIL = "exact_email"
    EXACT_PHONE = "exact_phone"
    NORMALIZED_EMAIL = "normalized_email"
    NAME_COMPANY = "name_company"
    NAME_EMAIL_DOMAIN = "name_email_domain"
    FUZZY_NAME_ADDRESS = "fuzzy_name_address"
    FUZZY_NAME = "fuzzy_name"

    @property
    def priority(self) -> int:
        return list(MatchTier).index(self) + 1

    @classmethod
    def from_priority(cls, priority: int) -> "MatchTier":
        try:
            return list(cls)[priority - 1]
        except IndexError as exc:
            raise ValueError(f"Unknown match tier priority {priority}") from exc


class ResolutionRun(BaseModel):
    """One execution of the matching waterfall for a tenant."""

    __tablename__ = "identity_resolution_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    status: Mapped[ResolutionRunStatus] = mapped_column(
        Enum(ResolutionRunStatus, name="identity_resolution_run_status_enum"),
        nullable=False,
        default=ResolutionRunStatus.PENDING_REVIEW,
        index=True,
    )
    computed_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    applied_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    reversed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    created_by: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    applied_by: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    stats_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Compute summary plus apply/reverse counts once those phases run.",
    )
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    candidates = relationship(
        "MatchCandidate",
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_identity_runs_org_status_computed", "organization_id", "status", "computed_at"),)

    def __repr__(self):
        return f"<ResolutionRun {self.id} org={self.organization_id} status={self.status.value}>"

    @property
    def is_reversible(self) -> bool:
        return self.status in (ResolutionRunStatus.APPLIED, ResolutionRunStatus.PARTIALLY_APPLIED)


class MatchCandidate(BaseModel):
    """A proposed same-person pairing awaiting review."""

    __tablename__ = "identity_match_candidates"

    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("identity_resolution_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    source_a_type: Mapped[SourceType] = mapped_column(
        Enum(SourceType, name="identity_source_type_enum"), nullable=False
    )
    source_a_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    source_a_label: Mapped[str | None] = mapped_column(db.String(255))
    source_b_type: Mapped[SourceType] = mapped_column(
        Enum(SourceType, name="identity_source_type_enum"), nullable=False
    )
    source_b_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    source_b_label: Mapped[str | None] = mapped_column(db.String(255))
    match_tier: Mapped[int] = mapped_column(db.Integer, nullable=False)
    tier: Mapped[MatchTier] = mapped_column(Enum(MatchTier, name="identity_match_tier_enum"), nullable=False)
    confidence: Mapped[float] = mapped_column(db.Float, nullable=False)
    match_signals: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    matched_on: Mapped[str | None] = mapped_column(db.String(500))
    needs_review: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    status: Mapped[CandidateStatus] = mapped_column(
        Enum(CandidateStatus, name="identity_candidate_status_enum"),
        nullable=False,
        default=CandidateStatus.PENDING,
        index=True,
    )
    graph_edge_id: Mapped[int | None] = mapped_column(ForeignKey("graph_edges.id"), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    decided_by: Mapped[str | None] = mapped_column(db.String(120))

    run = relationship("ResolutionRun", back_populates="candidates")
    graph_edge = relationship("GraphEdge", foreign_keys=[graph_edge_id])

    __table_args__ = (
        UniqueConstraint(
            "run_id",
            "source_a_type",
            "source_a_id",
            "source_b_type",
            "source_b_id",
            name="uq_identity_candidates_run_pair",
        ),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_identity_candidates_confidence"),
        CheckConstraint("match_tier >= 1", name="ck_identity_candidates_tier"),
        Index("idx_identity_candidates_run_order", "run_id", "match_tier", "confidence"),
    )

    def __repr__(self):
        return f"<MatchCandidate {self.id} run={self.run_id} tier={self.tier.value} status={self.status.value}>"

    @property
    def pair_key(self) -> str:
        left = f"{self.source_a_type.value}:{self.source_a_id}"
        right = f"{self.source_b_type.value}:{self.source_b_id}"
        return f"{left}::{right}" if left < right else f"{right}::{left}"


class GraphNode(BaseModel):
    """Lightweight pointer from the knowledge graph to a source record."""

    __tablename__ = "graph_nodes"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default=PERSON_ENTITY_TYPE)
    source_type: Mapped[SourceType] = mapped_column(
        Enum(SourceType, name="identity_source_type_enum"), nullable=False
    )
    source_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    label: Mapped[str | None] = mapped_column(db.String(255))
    sublabel: Mapped[str | None] = mapped_column(db.String(255))
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    created_by: Mapped[str | None] = mapped_column(db.String(120))

    __table_args__ = (
        UniqueConstraint("organization_id", "source_type", "source_id", name="uq_graph_nodes_org_source"),
        Index("idx_graph_nodes_org_type", "organization_id", "entity_type"),
    )

    def __repr__(self):
        return f"<GraphNode {self.id} {self.source_type.value}:{self.source_id}>"


class GraphEdge(BaseModel):
    """Time-bounded typed relationship between two graph nodes."""

    __tablename__ = "graph_edges"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    source_node_id: Mapped[int] = mapped_column(ForeignKey("graph_nodes.id", ondelete="CASCADE"), nullable=False)
    target_node_id: Mapped[int] = mapped_column(ForeignKey("graph_nodes.id", ondelete="CASCADE"), nullable=False)
    relation_type: Mapped[str] = mapped_column(db.String(50), nullable=False, default=SAME_PERSON_RELATION)
    weight: Mapped[float | None] = mapped_column(db.Float)
    confidence: Mapped[float | None] = mapped_column(db.Float)
    properties: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    source: Mapped[str] = mapped_column(db.String(50), nullable=False, default="system")
    run_id: Mapped[int | None] = mapped_column(
        ForeignKey("identity_resolution_runs.id"),
        nullable=True,
        index=True,
        comment="Resolution run that created the edge; NULL for manual edges.",
    )
    valid_from: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    valid_until: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(db.String(120))

    source_node = relationship("GraphNode", foreign_keys=[source_node_id])
    target_node = relationship("GraphNode", foreign_keys=[target_node_id])

    __table_args__ = (
        Index(
            "uq_graph_edges_active_pair",
            "organization_id",
            "source_node_id",
            "target_node_id",
            "relation_type",
            unique=True,
            sqlite_where=text("valid_until IS NULL"),
            postgresql_where=text("valid_until IS NULL"),
        ),
        CheckConstraint("source_node_id <> target_node_id", name="ck_graph_edges_no_self_loop"),
    )

    def __repr__(self):
        return f"<GraphEdge {self.id} {self.source_node_id}->{self.target_node_id} {self.relation_type}>"

    @property
    def is_active(self) -> bool:
        return self.valid_until is None

    def close(self, *, when: datetime | None = None) -> None:
        """End the edge's validity interval."""
        self.valid_until = when or _utcnow()


class IdentityLink(BaseModel):
    """Durable statement that two source records describe the same person."""

    __tablename__ = "identity_links"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id"), nullable=False, index=True)
    run_id: Mapped[int | None] = mapped_column(ForeignKey("identity_resolution_runs.id"), nullable=True, index=True)
    graph_edge_id: Mapped[int | None] = mapped_column(ForeignKey("graph_edges.id"), nullable=True)
    record_a_type: Mapped[SourceType] = mapped_column(
        Enum(SourceType, name="identity_source_type_enum"), nullable=False
    )
    record_a_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    record_b_type: Mapped[SourceType] = mapped_column(
        Enum(SourceType, name="identity_source_type_enum"), nullable=False
    )
    record_b_id: Mapped[int] = mapped_column(db.Integer, nullable=False)
    match_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    confidence: Mapped[float] = mapped_column(db.Float, nullable=False)
    matched_on: Mapped[str | None] = mapped_column(db.String(500))
    is_active: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True, index=True)
    linked_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    linked_by: Mapped[str | None] = mapped_column(db.String(120))
    deactivated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    deactivation_reason: Mapped[str | None] = mapped_column(db.String(255))

    __table_args__ = (
        Index(
            "uq_identity_links_active_pair",
            "organization_id",
            "record_a_type",
            "record_a_id",
            "record_b_type",
            "record_b_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    def __repr__(self):
        return (
            f"<IdentityLink {self.id} {self.record_a_type.value}:{self.record_a_id}"
            f"={self.record_b_type.value}:{self.record_b_id} active={self.is_active}>"
        )

    def deactivate(self, *, reason: str | None = None, when: datetime | None = None) -> None:
        self.is_active = False
        self.deactivated_at = when or _utcnow()
        self.deactivation_reason = reason


class AuditEvent(BaseModel):
    """Free-form observability record written by the audit sink."""

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int | None] = mapped_column(ForeignKey("organizations.id"), nullable=True, index=True)
    actor_id: Mapped[str | None] = mapped_column(db.String(120))
    level: Mapped[str] = mapped_column(
        Enum("debug", "info", "success", "warning", "error", name="audit_event_level_enum"),
        nullable=False,
        default="info",
    )
    action: Mapped[str | None] = mapped_column(db.String(100), index=True)
    message: Mapped[str] = mapped_column(db.Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)

    def __repr__(self):
        return f"<AuditEvent {self.id} {self.level} {self.action}>"
