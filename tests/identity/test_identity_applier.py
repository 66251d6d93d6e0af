from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from flask_app.identity.errors import NotFoundError, StateConflictError, ValidationError
from flask_app.identity.pipeline import applier as applier_module
from flask_app.identity.pipeline.applier import (
    ResolutionApplier,
    apply_resolution,
    ensure_graph_node,
    recover_interrupted_applies,
)
from flask_app.identity.pipeline.resolver import compute_resolution
from flask_app.identity.pipeline.reverser import reverse_resolution
from flask_app.models import (
    SAME_PERSON_RELATION,
    AuditEvent,
    CandidateStatus,
    GraphEdge,
    GraphNode,
    IdentityLink,
    MatchCandidate,
    ResolutionRun,
    ResolutionRunStatus,
    SourceType,
    db,
)

pytestmark = pytest.mark.integration


@pytest.fixture
def two_candidate_run(test_organization, crm_contact_factory, ecom_customer_factory):
    crm_contact_factory(first_name="Ada", last_name="Lovelace", email="ada@example.com")
    ecom_customer_factory(first_name="Ada", last_name="Lovelace", email="ada@example.com")
    crm_contact_factory(first_name="Alan", last_name="Turing", phone="555-010-9999")
    ecom_customer_factory(first_name="Alan", last_name="Turing", phone="5550109999")
    result = compute_resolution(test_organization.id, "user-1")
    assert result.total_candidates == 2
    return result.run_id


def _candidates(run_id):
    return db.session.scalars(
        select(MatchCandidate).where(MatchCandidate.run_id == run_id).order_by(MatchCandidate.match_tier)
    ).all()


def _count(model, *where):
    return db.session.scalar(select(func.count()).select_from(model).where(*where))


def test_apply_all_candidates(test_organization, two_candidate_run):
    result = apply_resolution(test_organization.id, two_candidate_run, "user-2")

    assert result.status == "applied"
    assert result.candidates_applied == 2
    assert result.edges_created == 2
    assert result.edges_existing == 0
    assert result.identity_links_created == 2
    assert result.graph_nodes_synced == 4
    assert result.errors == 0

    run = db.session.get(ResolutionRun, two_candidate_run)
    assert run.status == ResolutionRunStatus.APPLIED
    assert run.applied_at is not None
    assert run.applied_by == "user-2"
    assert run.stats_json["apply"]["edges_created"] == 2
    assert "compute" in run.stats_json

    assert all(candidate.status == CandidateStatus.APPLIED for candidate in _candidates(two_candidate_run))
    edges = db.session.scalars(select(GraphEdge)).all()
    assert {edge.run_id for edge in edges} == {two_candidate_run}
    assert all(edge.relation_type == SAME_PERSON_RELATION and edge.valid_until is None for edge in edges)
    assert _count(GraphNode) == 4


def test_apply_only_accepted_candidates(test_organization, two_candidate_run):
    email_candidate, phone_candidate = _candidates(two_candidate_run)

    result = apply_resolution(test_organization.id, two_candidate_run, accepted_ids=[email_candidate.id])

    assert result.candidates_applied == 1
    assert result.edges_created == 1
    assert _count(GraphEdge) == 1
    db.session.expire_all()
    assert db.session.get(MatchCandidate, email_candidate.id).status == CandidateStatus.APPLIED
    assert db.session.get(MatchCandidate, phone_candidate.id).status == CandidateStatus.PENDING


def test_rejected_ids_are_marked_and_never_applied(test_organization, two_candidate_run):
    email_candidate, phone_candidate = _candidates(two_candidate_run)

    result = apply_resolution(
        test_organization.id,
        two_candidate_run,
        "user-2",
        accepted_ids=[email_candidate.id, phone_candidate.id],
        rejected_ids=[phone_candidate.id],
    )

    assert result.candidates_rejected == 1
    assert result.candidates_applied == 1
    db.session.expire_all()
    rejected = db.session.get(MatchCandidate, phone_candidate.id)
    assert rejected.status == CandidateStatus.REJECTED
    assert rejected.decided_by == "user-2"
    assert rejected.graph_edge_id is None


def test_apply_links_existing_edge_instead_of_duplicating(test_organization, shared_email_pair):
    first = compute_resolution(test_organization.id)
    apply_resolution(test_organization.id, first.run_id)
    second = compute_resolution(test_organization.id)

    result = apply_resolution(test_organization.id, second.run_id)

    assert result.status == "applied"
    assert result.edges_created == 0
    assert result.edges_existing == 1
    assert result.identity_links_created == 0
    assert _count(GraphEdge, GraphEdge.valid_until.is_(None)) == 1
    assert _count(IdentityLink, IdentityLink.is_active.is_(True)) == 1
    candidate = _candidates(second.run_id)[0]
    assert candidate.status == CandidateStatus.APPLIED
    assert candidate.graph_edge_id is not None


def test_apply_twice_is_a_state_conflict(test_organization, two_candidate_run):
    apply_resolution(test_organization.id, two_candidate_run)
    edges_before = _count(GraphEdge)

    with pytest.raises(StateConflictError) as excinfo:
        apply_resolution(test_organization.id, two_candidate_run)

    assert excinfo.value.current_status == "applied"
    assert _count(GraphEdge) == edges_before


def test_apply_failed_run_is_a_state_conflict(test_organization):
    run = ResolutionRun(organization_id=test_organization.id, status=ResolutionRunStatus.FAILED)
    db.session.add(run)
    db.session.commit()

    with pytest.raises(StateConflictError):
        apply_resolution(test_organization.id, run.id)


def test_apply_unknown_run_is_not_found(test_organization):
    with pytest.raises(NotFoundError):
        apply_resolution(test_organization.id, 9999)


def test_apply_other_tenants_run_is_not_found(test_organization, other_organization, two_candidate_run):
    with pytest.raises(NotFoundError):
        apply_resolution(other_organization.id, two_candidate_run)
    assert db.session.get(ResolutionRun, two_candidate_run).status == ResolutionRunStatus.PENDING_REVIEW


@pytest.mark.parametrize("accepted", ["1,2", [0], ["x"], 5])
def test_apply_rejects_malformed_ids(test_organization, two_candidate_run, accepted):
    with pytest.raises(ValidationError):
        apply_resolution(test_organization.id, two_candidate_run, accepted_ids=accepted)


def test_apply_continues_after_a_candidate_fails(monkeypatch, test_organization, two_candidate_run):
    email_candidate, phone_candidate = _candidates(two_candidate_run)
    failing = (phone_candidate.source_a_type, phone_candidate.source_a_id)
    original = applier_module.ensure_graph_node

    def flaky_ensure_graph_node(session, organization_id, source_type, source_id, **kwargs):
        if (source_type, source_id) == failing:
            raise RuntimeError("graph store unavailable")
        return original(session, organization_id, source_type, source_id, **kwargs)

    monkeypatch.setattr(applier_module, "ensure_graph_node", flaky_ensure_graph_node)

    result = apply_resolution(test_organization.id, two_candidate_run)

    assert result.status == "partially_applied"
    assert result.errors == 1
    assert result.candidates_applied == 1
    assert result.error_details == [{"candidate_id": phone_candidate.id, "error": "graph store unavailable"}]
    db.session.expire_all()
    assert db.session.get(ResolutionRun, two_candidate_run).status == ResolutionRunStatus.PARTIALLY_APPLIED
    assert db.session.get(MatchCandidate, email_candidate.id).status == CandidateStatus.APPLIED
    assert db.session.get(MatchCandidate, phone_candidate.id).status == CandidateStatus.PENDING
    event = db.session.scalars(select(AuditEvent).where(AuditEvent.action == "identity_resolution_apply")).one()
    assert event.level == "warning"


def test_apply_survives_a_failing_audit_sink(test_organization, two_candidate_run):
    class BrokenSink:
        def record(self, **event):
            raise RuntimeError("audit backend down")

    result = ResolutionApplier(audit=BrokenSink()).apply(test_organization.id, two_candidate_run)

    assert result.status == "applied"
    assert db.session.get(ResolutionRun, two_candidate_run).status == ResolutionRunStatus.APPLIED


def test_ensure_graph_node_is_get_or_create(test_organization):
    node, created = ensure_graph_node(db.session, test_organization.id, SourceType.CRM, 12, label="Ada")
    again, created_again = ensure_graph_node(db.session, test_organization.id, SourceType.CRM, 12, label="Ada L.")

    assert created is True
    assert created_again is False
    assert again.id == node.id
    assert again.label == "Ada L."
    assert _count(GraphNode) == 1


def test_empty_accepted_list_applies_every_open_candidate(test_organization, two_candidate_run):
    result = apply_resolution(test_organization.id, two_candidate_run, accepted_ids=[])

    assert result.status == "applied"
    assert result.candidates_applied == 2
    assert result.edges_created == 2
    assert all(candidate.status == CandidateStatus.APPLIED for candidate in _candidates(two_candidate_run))


def test_empty_accepted_list_still_honours_rejections(test_organization, two_candidate_run):
    email_candidate, phone_candidate = _candidates(two_candidate_run)

    result = apply_resolution(
        test_organization.id, two_candidate_run, accepted_ids=[], rejected_ids=[phone_candidate.id]
    )

    assert result.candidates_applied == 1
    assert result.candidates_rejected == 1
    db.session.expire_all()
    assert db.session.get(MatchCandidate, email_candidate.id).status == CandidateStatus.APPLIED
    assert db.session.get(MatchCandidate, phone_candidate.id).status == CandidateStatus.REJECTED


def test_reverse_is_refused_while_apply_is_running(monkeypatch, test_organization, two_candidate_run):
    original = ResolutionApplier._apply_candidate
    seen_statuses = []

    def reverse_before_each_candidate(self, organization_id, candidate_id, run_id, actor_id):
        with pytest.raises(StateConflictError) as excinfo:
            reverse_resolution(organization_id, run_id, "user-9")
        seen_statuses.append(excinfo.value.current_status)
        return original(self, organization_id, candidate_id, run_id, actor_id)

    monkeypatch.setattr(ResolutionApplier, "_apply_candidate", reverse_before_each_candidate)

    result = apply_resolution(test_organization.id, two_candidate_run)

    assert seen_statuses == ["applying", "applying"]
    assert result.status == "applied"
    assert result.edges_created == 2
    db.session.expire_all()
    assert db.session.get(ResolutionRun, two_candidate_run).status == ResolutionRunStatus.APPLIED

    reversed_ = reverse_resolution(test_organization.id, two_candidate_run)

    assert reversed_.edges_deactivated == 2
    assert reversed_.links_deactivated == 2
    assert _count(GraphEdge, GraphEdge.run_id == two_candidate_run, GraphEdge.valid_until.is_(None)) == 0
    assert _count(IdentityLink, IdentityLink.run_id == two_candidate_run, IdentityLink.is_active.is_(True)) == 0


def test_apply_that_loses_the_claim_writes_nothing(monkeypatch, test_organization, two_candidate_run):
    original_require_run = applier_module.require_run

    def competing_apply_claims_first(session, organization_id, run_id):
        run = original_require_run(session, organization_id, run_id)
        assert run.status == ResolutionRunStatus.PENDING_REVIEW
        session.execute(
            update(ResolutionRun).where(ResolutionRun.id == run.id).values(status=ResolutionRunStatus.APPLYING)
        )
        session.commit()
        return run

    monkeypatch.setattr(applier_module, "require_run", competing_apply_claims_first)

    with pytest.raises(StateConflictError) as excinfo:
        apply_resolution(test_organization.id, two_candidate_run, "user-2")

    assert excinfo.value.current_status == "applying"
    assert _count(GraphEdge) == 0
    assert _count(IdentityLink) == 0
    assert _count(GraphNode) == 0
    db.session.expire_all()
    assert all(candidate.status == CandidateStatus.PENDING for candidate in _candidates(two_candidate_run))
    assert db.session.get(ResolutionRun, two_candidate_run).status == ResolutionRunStatus.APPLYING


def test_interrupted_apply_is_recovered_as_partially_applied(monkeypatch, test_organization, two_candidate_run):
    def worker_killed(self, organization_id, run_id, result):
        raise RuntimeError("worker killed")

    monkeypatch.setattr(ResolutionApplier, "_finish", worker_killed)
    with pytest.raises(RuntimeError):
        apply_resolution(test_organization.id, two_candidate_run)
    monkeypatch.undo()

    db.session.expire_all()
    assert db.session.get(ResolutionRun, two_candidate_run).status == ResolutionRunStatus.APPLYING
    assert recover_interrupted_applies(test_organization.id) == []
    with pytest.raises(StateConflictError):
        reverse_resolution(test_organization.id, two_candidate_run)

    recovered = recover_interrupted_applies(test_organization.id, stale_after_seconds=0)

    assert recovered == [two_candidate_run]
    db.session.expire_all()
    run = db.session.get(ResolutionRun, two_candidate_run)
    assert run.status == ResolutionRunStatus.PARTIALLY_APPLIED
    assert run.stats_json["apply"]["interrupted"] is True
    assert reverse_resolution(test_organization.id, two_candidate_run).edges_deactivated == 2


def test_recovery_is_scoped_to_the_organization(test_organization, other_organization):
    claimed_at = datetime.now(timezone.utc) - timedelta(hours=2)
    mine = ResolutionRun(organization_id=test_organization.id, status=ResolutionRunStatus.APPLYING, applied_at=claimed_at)
    theirs = ResolutionRun(
        organization_id=other_organization.id, status=ResolutionRunStatus.APPLYING, applied_at=claimed_at
    )
    db.session.add_all([mine, theirs])
    db.session.commit()

    assert recover_interrupted_applies(test_organization.id) == [mine.id]
    db.session.expire_all()
    assert db.session.get(ResolutionRun, theirs.id).status == ResolutionRunStatus.APPLYING
