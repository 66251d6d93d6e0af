import pytest
from sqlalchemy import func, select

from flask_app.identity.errors import NotFoundError, StateConflictError
from flask_app.identity.pipeline.applier import apply_resolution
from flask_app.identity.pipeline.resolver import compute_resolution
from flask_app.identity.pipeline.reverser import reverse_resolution
from flask_app.models import (
    AuditEvent,
    CandidateStatus,
    GraphEdge,
    IdentityLink,
    MatchCandidate,
    ResolutionRun,
    ResolutionRunStatus,
    db,
)

pytestmark = pytest.mark.integration


@pytest.fixture
def applied_run(test_organization, shared_email_pair):
    computed = compute_resolution(test_organization.id)
    apply_resolution(test_organization.id, computed.run_id)
    return computed.run_id


def test_reverse_closes_edges_and_links_without_deleting(test_organization, applied_run):
    result = reverse_resolution(test_organization.id, applied_run, "user-3")

    assert result.status == "reversed"
    assert result.edges_deactivated == 1
    assert result.links_deactivated == 1

    edge = db.session.scalars(select(GraphEdge)).one()
    assert edge.valid_until is not None
    link = db.session.scalars(select(IdentityLink)).one()
    assert link.is_active is False
    assert link.deactivated_at is not None
    assert link.deactivation_reason == f"resolution run {applied_run} reversed"

    run = db.session.get(ResolutionRun, applied_run)
    assert run.status == ResolutionRunStatus.REVERSED
    assert run.reversed_at is not None
    assert run.stats_json["reverse"]["edges_deactivated"] == 1


def test_reverse_keeps_candidate_history(test_organization, applied_run):
    reverse_resolution(test_organization.id, applied_run)

    statuses = db.session.scalars(select(MatchCandidate.status).where(MatchCandidate.run_id == applied_run)).all()
    assert statuses == [CandidateStatus.APPLIED]


def test_apply_after_reverse_is_a_state_conflict(test_organization, applied_run):
    reverse_resolution(test_organization.id, applied_run)

    with pytest.raises(StateConflictError) as excinfo:
        apply_resolution(test_organization.id, applied_run)

    assert excinfo.value.current_status == "reversed"
    assert db.session.scalar(select(func.count()).select_from(GraphEdge).where(GraphEdge.valid_until.is_(None))) == 0


def test_reverse_twice_is_a_state_conflict(test_organization, applied_run):
    reverse_resolution(test_organization.id, applied_run)

    with pytest.raises(StateConflictError):
        reverse_resolution(test_organization.id, applied_run)


def test_reverse_pending_run_is_a_state_conflict(test_organization, shared_email_pair):
    computed = compute_resolution(test_organization.id)

    with pytest.raises(StateConflictError) as excinfo:
        reverse_resolution(test_organization.id, computed.run_id)

    assert excinfo.value.current_status == "pending_review"


def test_reverse_unknown_run_is_not_found(test_organization):
    with pytest.raises(NotFoundError):
        reverse_resolution(test_organization.id, 424242)


def test_reverse_leaves_other_runs_alone(test_organization, crm_contact_factory, ecom_customer_factory):
    crm_contact_factory(email="first@example.com")
    ecom_customer_factory(email="first@example.com")
    first = compute_resolution(test_organization.id)
    apply_resolution(test_organization.id, first.run_id)

    crm_contact_factory(email="second@example.com")
    ecom_customer_factory(email="second@example.com")
    second = compute_resolution(test_organization.id)
    apply_resolution(test_organization.id, second.run_id)

    result = reverse_resolution(test_organization.id, second.run_id)

    assert result.edges_deactivated == 1
    active = db.session.scalars(select(GraphEdge).where(GraphEdge.valid_until.is_(None))).all()
    assert [edge.run_id for edge in active] == [first.run_id]


def test_partially_applied_run_can_be_reversed(test_organization, applied_run):
    db.session.get(ResolutionRun, applied_run).status = ResolutionRunStatus.PARTIALLY_APPLIED
    db.session.commit()

    result = reverse_resolution(test_organization.id, applied_run)

    assert result.status == "reversed"


def test_reverse_writes_audit_event(test_organization, applied_run):
    reverse_resolution(test_organization.id, applied_run, "user-3")

    event = db.session.scalars(select(AuditEvent).where(AuditEvent.action == "identity_resolution_reverse")).one()
    assert event.actor_id == "user-3"
    assert event.details["edges_deactivated"] == 1
