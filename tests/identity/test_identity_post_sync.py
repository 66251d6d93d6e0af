import pytest
from sqlalchemy import select

from flask_app.identity.pipeline.post_sync import SYSTEM_ACTOR, trigger_post_sync_resolution
from flask_app.identity.settings import (
    AUTO_APPLY_ENABLED_FLAG,
    AUTO_APPLY_THRESHOLD_FLAG,
    get_auto_apply_settings,
)
from flask_app.models import (
    CandidateStatus,
    MatchCandidate,
    OrganizationFeatureFlag,
    ResolutionRun,
    ResolutionRunStatus,
    db,
)

pytestmark = pytest.mark.integration


@pytest.fixture
def confident_and_fuzzy(crm_contact_factory, ecom_customer_factory):
    crm_contact_factory(first_name="Ada", last_name="Lovelace", email="ada@example.com")
    ecom_customer_factory(first_name="Ada", last_name="Lovelace", email="ada@example.com")
    crm_contact_factory(first_name="Alan", last_name="Turing", phone="555-010-9999")
    ecom_customer_factory(first_name="Alan", last_name="Turing", phone="5550109999")
    crm_contact_factory(first_name="J", last_name="Hopper")
    ecom_customer_factory(first_name="Jane", last_name="Hopper")


def _statuses(run_id):
    rows = db.session.scalars(select(MatchCandidate).where(MatchCandidate.run_id == run_id)).all()
    return {candidate.tier.value: candidate.status for candidate in rows}


def test_post_sync_auto_applies_confident_candidates(test_organization, confident_and_fuzzy):
    result = trigger_post_sync_resolution(test_organization.id)

    assert result.total_candidates == 3
    assert result.auto_applied == 2
    assert result.pending_review == 1
    assert result.auto_apply_enabled is True
    assert result.auto_apply_threshold == 0.90
    assert result.apply["status"] == "applied"

    db.session.expire_all()
    statuses = _statuses(result.run_id)
    assert statuses["exact_email"] == CandidateStatus.APPLIED
    assert statuses["exact_phone"] == CandidateStatus.APPLIED
    assert statuses["fuzzy_name"] == CandidateStatus.PENDING
    run = db.session.get(ResolutionRun, result.run_id)
    assert run.status == ResolutionRunStatus.APPLIED
    assert run.created_by == SYSTEM_ACTOR


def test_post_sync_respects_tenant_threshold(test_organization, confident_and_fuzzy):
    OrganizationFeatureFlag.set_flag(test_organization.id, AUTO_APPLY_THRESHOLD_FLAG, 0.99, "float")

    result = trigger_post_sync_resolution(test_organization.id, "user-5")

    assert result.auto_apply_threshold == 0.99
    assert result.auto_applied == 1
    assert result.pending_review == 2
    db.session.expire_all()
    assert _statuses(result.run_id)["exact_phone"] == CandidateStatus.PENDING


def test_post_sync_leaves_run_for_review_when_disabled(test_organization, confident_and_fuzzy):
    OrganizationFeatureFlag.set_flag(test_organization.id, AUTO_APPLY_ENABLED_FLAG, False)

    result = trigger_post_sync_resolution(test_organization.id)

    assert result.auto_apply_enabled is False
    assert result.auto_applied == 0
    assert result.pending_review == 3
    assert result.apply is None
    assert db.session.get(ResolutionRun, result.run_id).status == ResolutionRunStatus.PENDING_REVIEW


def test_post_sync_with_nothing_qualifying(test_organization, crm_contact_factory, ecom_customer_factory):
    crm_contact_factory(first_name="J", last_name="Hopper")
    ecom_customer_factory(first_name="Jane", last_name="Hopper")

    result = trigger_post_sync_resolution(test_organization.id)

    assert result.total_candidates == 1
    assert result.auto_applied == 0
    assert result.pending_review == 1
    assert db.session.get(ResolutionRun, result.run_id).status == ResolutionRunStatus.PENDING_REVIEW


def test_auto_apply_settings_fall_back_on_out_of_range_flag(app, test_organization):
    OrganizationFeatureFlag.set_flag(test_organization.id, AUTO_APPLY_THRESHOLD_FLAG, 1.5, "float")
    app.config["IDENTITY_AUTO_APPLY_THRESHOLD"] = 0.93

    enabled, threshold = get_auto_apply_settings(test_organization.id)

    assert enabled is True
    assert threshold == 0.93
