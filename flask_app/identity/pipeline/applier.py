"""
Resolution applier: promote staged candidates into the identity graph.

The run is claimed with a conditional ``pending_review -> applying`` update
before any candidate is touched, so a run is applied at most once and cannot be
reversed while candidates are still being written. Candidates are committed one
at a time; a failing candidate is rolled back, counted and skipped, and the run
finishes as ``partially_applied`` instead of ``applied``. A run left in
``applying`` by a crashed worker is moved to ``partially_applied`` by
:func:`recover_interrupted_applies`.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from flask import current_app
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from config.monitoring import IdentityMonitoring
from flask_app.identity.audit import AuditLogSink
from flask_app.identity.errors import PartialApplyError, StateConflictError
from flask_app.identity.pipeline.guards import coerce_id_list, require_organization, require_run
from flask_app.identity.store import RecordStore
from flask_app.models import (
    PERSON_ENTITY_TYPE,
    SAME_PERSON_RELATION,
    CandidateStatus,
    GraphEdge,
    GraphNode,
    IdentityLink,
    MatchCandidate,
    MatchTier,
    ResolutionRun,
    ResolutionRunStatus,
    SourceType,
    db,
)

EDGE_SOURCE = "identity_resolution"
MAX_ERROR_DETAILS = 20

LINK_MATCH_TYPES: dict[MatchTier, str] = {
    MatchTier.EXACT_EMAIL: "email_exact",
    MatchTier.EXACT_PHONE: "phone_match",
    MatchTier.NORMALIZED_EMAIL: "email_normalized",
    MatchTier.NAME_COMPANY: "name_company",
    MatchTier.NAME_EMAIL_DOMAIN: "name_email_domain",
    MatchTier.FUZZY_NAME_ADDRESS: "name_address",
    MatchTier.FUZZY_NAME: "name_only",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ApplyResult:
    run_id: int
    status: str
    edges_created: int = 0
    edges_existing: int = 0
    identity_links_created: int = 0
    graph_nodes_synced: int = 0
    candidates_applied: int = 0
    candidates_rejected: int = 0
    errors: int = 0
    error_details: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class _CandidateOutcome:
    nodes_synced: int
    edge_created: bool
    link_created: bool


def ensure_graph_node(
    session: Session,
    organization_id: int,
    source_type: SourceType,
    source_id: int,
    *,
    label: str | None = None,
    sublabel: str | None = None,
    actor_id: str | None = None,
) -> tuple[GraphNode, bool]:
    """Get or create the person node for a source record. Returns ``(node, created)``."""
    node = session.scalar(
        select(GraphNode).where(
            GraphNode.organization_id == organization_id,
            GraphNode.source_type == source_type,
            GraphNode.source_id == source_id,
        )
    )
    if node is not None:
        if label and node.label != label:
            node.label = label
        if sublabel and node.sublabel != sublabel:
            node.sublabel = sublabel
        if not node.is_active:
            node.is_active = True
        return node, False

    node = GraphNode(
        organization_id=organization_id,
        entity_type=PERSON_ENTITY_TYPE,
        source_type=source_type,
        source_id=source_id,
        label=label,
        sublabel=sublabel,
        is_active=True,
        created_by=actor_id,
    )
    session.add(node)
    session.flush()
    return node, True


def find_active_edge(session: Session, organization_id: int, node_a_id: int, node_b_id: int) -> GraphEdge | None:
    """Active ``same_person`` edge between two nodes, in either direction."""
    return session.scalar(
        select(GraphEdge)
        .where(
            GraphEdge.organization_id == organization_id,
            GraphEdge.relation_type == SAME_PERSON_RELATION,
            GraphEdge.valid_until.is_(None),
            or_(
                and_(GraphEdge.source_node_id == node_a_id, GraphEdge.target_node_id == node_b_id),
                and_(GraphEdge.source_node_id == node_b_id, GraphEdge.target_node_id == node_a_id),
            ),
        )
        .order_by(GraphEdge.id.asc())
        .limit(1)
    )


def _find_active_link(session: Session, candidate: MatchCandidate) -> IdentityLink | None:
    forward = and_(
        IdentityLink.record_a_type == candidate.source_a_type,
        IdentityLink.record_a_id == candidate.source_a_id,
        IdentityLink.record_b_type == candidate.source_b_type,
        IdentityLink.record_b_id == candidate.source_b_id,
    )
    backward = and_(
        IdentityLink.record_a_type == candidate.source_b_type,
        IdentityLink.record_a_id == candidate.source_b_id,
        IdentityLink.record_b_type == candidate.source_a_type,
        IdentityLink.record_b_id == candidate.source_a_id,
    )
    return session.scalar(
        select(IdentityLink)
        .where(
            IdentityLink.organization_id == candidate.organization_id,
            IdentityLink.is_active.is_(True),
            or_(forward, backward),
        )
        .limit(1)
    )


class ResolutionApplier:
    """Apply a ``pending_review`` run to the identity graph."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        store: RecordStore | None = None,
        audit: AuditLogSink | None = None,
    ):
        self.session = session or db.session
        self.store = store or RecordStore(self.session)
        self.audit = audit or AuditLogSink(self.session)

    def apply(
        self,
        organization_id: int,
        run_id: int,
        actor_id: str | None = None,
        *,
        accepted_ids: Iterable[int] | None = None,
        rejected_ids: Iterable[int] | None = None,
    ) -> ApplyResult:
        """
        Apply a run's candidates.

        Args:
            accepted_ids: Apply only these candidates. ``None`` or an empty list
                applies every candidate that is not rejected.
            rejected_ids: Mark these candidates rejected before applying; they
                are never applied even if also listed in ``accepted_ids``.

        Raises:
            ValidationError: malformed ids.
            NotFoundError: the run does not exist for this tenant.
            StateConflictError: the run is not ``pending_review``.
        """
        org_id = require_organization(organization_id, self.session)
        accepted = coerce_id_list(accepted_ids, "accepted_ids") or None
        rejected = coerce_id_list(rejected_ids, "rejected_ids") or []
        run = require_run(self.session, org_id, run_id)
        run_pk = run.id

        self._claim(org_id, run, actor_id)
        result = ApplyResult(run_id=run_pk, status=ResolutionRunStatus.APPLYING.value)

        if rejected:
            result.candidates_rejected = self._reject(run_pk, rejected, actor_id)

        for candidate_id in self._select_candidate_ids(run_pk, accepted, rejected):
            try:
                outcome = self._apply_candidate(org_id, candidate_id, run_pk, actor_id)
                self.session.commit()
            except Exception as exc:
                self.session.rollback()
                failure = exc if isinstance(exc, PartialApplyError) else PartialApplyError(candidate_id, str(exc))
                result.errors += 1
                if len(result.error_details) < MAX_ERROR_DETAILS:
                    result.error_details.append({"candidate_id": candidate_id, "error": failure.reason})
                current_app.logger.warning(
                    str(failure),
                    exc_info=True,
                    extra={"identity_run_id": run_pk, "identity_candidate_id": candidate_id, "organization_id": org_id},
                )
                continue

            result.candidates_applied += 1
            result.graph_nodes_synced += outcome.nodes_synced
            if outcome.edge_created:
                result.edges_created += 1
            else:
                result.edges_existing += 1
            if outcome.link_created:
                result.identity_links_created += 1

        self._finish(org_id, run_pk, result)

        IdentityMonitoring.record_apply(
            status=result.status,
            edges_created=result.edges_created,
            edges_existing=result.edges_existing,
            errors=result.errors,
        )
        current_app.logger.info(
            "Identity resolution applied",
            extra={
                "identity_run_id": run_pk,
                "organization_id": org_id,
                "identity_status": result.status,
                "identity_edges_created": result.edges_created,
                "identity_edges_existing": result.edges_existing,
                "identity_errors": result.errors,
            },
        )
        self._emit_audit(
            organization_id=org_id,
            actor_id=actor_id,
            action="identity_resolution_apply",
            level="success" if result.errors == 0 else "warning",
            message=(
                f"Applied identity resolution run {run_pk}: {result.edges_created} edges created, "
                f"{result.edges_existing} already existed, {result.errors} errors"
            ),
            details={key: value for key, value in result.as_dict().items() if key != "error_details"},
        )
        return result

    def _claim(self, organization_id: int, run: ResolutionRun, actor_id: str | None) -> None:
        claimed = self.store.transition_run(
            run_id=run.id,
            organization_id=organization_id,
            expected=(ResolutionRunStatus.PENDING_REVIEW,),
            new_status=ResolutionRunStatus.APPLYING,
            applied_at=_utcnow(),
            applied_by=actor_id,
        )
        if not claimed:
            self.session.rollback()
            current = self.session.scalar(select(ResolutionRun.status).where(ResolutionRun.id == run.id))
            status = current.value if current is not None else None
            raise StateConflictError(
                f"Resolution run {run.id} is {status}; only pending_review runs can be applied",
                current_status=status,
            )
        self.session.commit()

    def _reject(self, run_id: int, candidate_ids: list[int], actor_id: str | None) -> int:
        result = self.session.execute(
            update(MatchCandidate)
            .where(
                MatchCandidate.run_id == run_id,
                MatchCandidate.id.in_(candidate_ids),
                MatchCandidate.status.in_((CandidateStatus.PENDING, CandidateStatus.ACCEPTED)),
            )
            .values(status=CandidateStatus.REJECTED, decided_at=_utcnow(), decided_by=actor_id)
            .execution_options(synchronize_session="fetch")
        )
        self.session.commit()
        return result.rowcount or 0

    def _select_candidate_ids(self, run_id: int, accepted: list[int] | None, rejected: list[int]) -> list[int]:
        stmt = (
            select(MatchCandidate.id)
            .where(
                MatchCandidate.run_id == run_id,
                MatchCandidate.status.in_((CandidateStatus.PENDING, CandidateStatus.ACCEPTED)),
            )
            .order_by(MatchCandidate.match_tier.asc(), MatchCandidate.confidence.desc(), MatchCandidate.id.asc())
        )
        if accepted is not None:
            wanted = set(accepted) - set(rejected)
            if not wanted:
                return []
            stmt = stmt.where(MatchCandidate.id.in_(wanted))
        return list(self.session.scalars(stmt))

    def _apply_candidate(
        self, organization_id: int, candidate_id: int, run_id: int, actor_id: str | None
    ) -> _CandidateOutcome:
        candidate = self.session.get(MatchCandidate, candidate_id)
        if candidate is None:
            raise PartialApplyError(candidate_id, "candidate disappeared")

        node_a, _ = ensure_graph_node(
            self.session,
            organization_id,
            candidate.source_a_type,
            candidate.source_a_id,
            label=candidate.source_a_label,
            actor_id=actor_id,
        )
        node_b, _ = ensure_graph_node(
            self.session,
            organization_id,
            candidate.source_b_type,
            candidate.source_b_id,
            label=candidate.source_b_label,
            actor_id=actor_id,
        )
        if node_a.id == node_b.id:
            raise PartialApplyError(candidate_id, "both records resolve to the same graph node")

        edge = find_active_edge(self.session, organization_id, node_a.id, node_b.id)
        edge_created = edge is None
        link_created = False
        now = _utcnow()
        if edge is None:
            edge = GraphEdge(
                organization_id=organization_id,
                source_node_id=node_a.id,
                target_node_id=node_b.id,
                relation_type=SAME_PERSON_RELATION,
                weight=candidate.confidence,
                confidence=candidate.confidence,
                properties={
                    "run_id": run_id,
                    "match_tier": candidate.tier.value,
                    "match_signals": list(candidate.match_signals or []),
                    "matched_on": candidate.matched_on,
                },
                source=EDGE_SOURCE,
                run_id=run_id,
                valid_from=now,
                created_by=actor_id,
            )
            self.session.add(edge)
            self.session.flush()

            if _find_active_link(self.session, candidate) is None:
                self.session.add(
                    IdentityLink(
                        organization_id=organization_id,
                        run_id=run_id,
                        graph_edge_id=edge.id,
                        record_a_type=candidate.source_a_type,
                        record_a_id=candidate.source_a_id,
                        record_b_type=candidate.source_b_type,
                        record_b_id=candidate.source_b_id,
                        match_type=LINK_MATCH_TYPES[candidate.tier],
                        confidence=candidate.confidence,
                        matched_on=candidate.matched_on,
                        is_active=True,
                        linked_at=now,
                        linked_by=actor_id,
                    )
                )
                self.session.flush()
                link_created = True

        candidate.status = CandidateStatus.APPLIED
        candidate.graph_edge_id = edge.id
        candidate.decided_at = now
        candidate.decided_by = actor_id
        return _CandidateOutcome(nodes_synced=2, edge_created=edge_created, link_created=link_created)

    def _finish(self, organization_id: int, run_id: int, result: ApplyResult) -> None:
        final_status = ResolutionRunStatus.APPLIED if result.errors == 0 else ResolutionRunStatus.PARTIALLY_APPLIED
        run = self.session.get(ResolutionRun, run_id)
        stats = dict(run.stats_json or {}) if run is not None else {}
        result.status = final_status.value
        stats["apply"] = result.as_dict()
        moved = self.store.transition_run(
            run_id=run_id,
            organization_id=organization_id,
            expected=(ResolutionRunStatus.APPLYING,),
            new_status=final_status,
            applied_at=_utcnow(),
            stats_json=stats,
        )
        self.session.commit()
        if not moved:
            # Marked interrupted by recover_interrupted_applies while still running.
            current = self.session.scalar(select(ResolutionRun.status).where(ResolutionRun.id == run_id))
            result.status = current.value if current is not None else result.status
            current_app.logger.warning(
                "Resolution run changed status during apply",
                extra={"identity_run_id": run_id, "identity_status": result.status},
            )

    def _emit_audit(self, **event: Any) -> None:
        try:
            self.audit.record(**event)
        except Exception:
            current_app.logger.warning("Audit sink raised; ignoring", exc_info=True)


def apply_resolution(
    organization_id: int,
    run_id: int,
    actor_id: str | None = None,
    accepted_ids: Iterable[int] | None = None,
    rejected_ids: Iterable[int] | None = None,
) -> ApplyResult:
    return ResolutionApplier().apply(
        organization_id, run_id, actor_id, accepted_ids=accepted_ids, rejected_ids=rejected_ids
    )


def recover_interrupted_applies(
    organization_id: int | None = None,
    *,
    stale_after_seconds: int | None = None,
    session: Session | None = None,
) -> list[int]:
    """
    Move runs stuck in ``applying`` to ``partially_applied``.

    A run counts as stuck once its apply was claimed more than
    ``stale_after_seconds`` ago (``IDENTITY_APPLY_STALE_SECONDS`` by default).
    Candidates committed before the interruption stay applied and become
    reversible with the run. Returns the ids of the recovered runs.
    """
    session = session or db.session
    if stale_after_seconds is None:
        stale_after_seconds = current_app.config.get("IDENTITY_APPLY_STALE_SECONDS", 15 * 60)
    cutoff = _utcnow() - timedelta(seconds=max(int(stale_after_seconds), 0))

    stmt = select(ResolutionRun).where(
        ResolutionRun.status == ResolutionRunStatus.APPLYING,
        ResolutionRun.applied_at <= cutoff,
    )
    if organization_id is not None:
        stmt = stmt.where(ResolutionRun.organization_id == organization_id)

    store = RecordStore(session)
    recovered = []
    for run in session.scalars(stmt.order_by(ResolutionRun.id.asc())).all():
        stats = dict(run.stats_json or {})
        stats["apply"] = {"run_id": run.id, "status": ResolutionRunStatus.PARTIALLY_APPLIED.value, "interrupted": True}
        if store.transition_run(
            run_id=run.id,
            organization_id=run.organization_id,
            expected=(ResolutionRunStatus.APPLYING,),
            new_status=ResolutionRunStatus.PARTIALLY_APPLIED,
            stats_json=stats,
        ):
            recovered.append(run.id)
    session.commit()

    if recovered:
        current_app.logger.warning(
            "Recovered interrupted identity resolution applies",
            extra={"identity_run_ids": recovered, "organization_id": organization_id},
        )
    return recovered
