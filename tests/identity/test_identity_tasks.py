from datetime import datetime, timedelta, timezone

import pytest

from flask_app.identity.celery_app import get_celery_app
from flask_app.identity.errors import StateConflictError
from flask_app.identity.tasks import (
    apply_resolution_task,
    compute_resolution_task,
    identity_healthcheck,
    post_sync_resolution_task,
    recover_interrupted_applies_task,
    reverse_resolution_task,
    run_connector_sync_task,
)
from flask_app.models import EcomCustomer, ResolutionRun, ResolutionRunStatus, db

pytestmark = [pytest.mark.integration, pytest.mark.slow]


def test_tasks_are_registered(app):
    celery_app = get_celery_app(app)

    for name in (
        "identity.healthcheck",
        "identity.resolution.compute",
        "identity.resolution.apply",
        "identity.resolution.reverse",
        "identity.resolution.post_sync",
        "identity.resolution.recover",
        "identity.sync.run_connector",
    ):
        assert name in celery_app.tasks
    assert celery_app.conf.task_default_queue == "identity"


def test_healthcheck_task():
    payload = identity_healthcheck.apply().get()

    assert payload["status"] == "ok"
    assert payload["timestamp"]


def test_compute_apply_reverse_tasks(test_organization, shared_email_pair):
    computed = compute_resolution_task.apply(kwargs={"organization_id": test_organization.id, "actor_id": "worker"}).get()
    run_id = computed["run_id"]
    assert computed["total_candidates"] == 1

    applied = apply_resolution_task.apply(kwargs={"organization_id": test_organization.id, "run_id": run_id}).get()
    assert applied["status"] == "applied"

    reversed_ = reverse_resolution_task.apply(kwargs={"organization_id": test_organization.id, "run_id": run_id}).get()
    assert reversed_["status"] == "reversed"

    db.session.expire_all()
    assert db.session.get(ResolutionRun, run_id).status == ResolutionRunStatus.REVERSED


def test_task_failure_surfaces_service_error(test_organization, shared_email_pair):
    computed = compute_resolution_task.apply(kwargs={"organization_id": test_organization.id}).get()

    result = reverse_resolution_task.apply(kwargs={"organization_id": test_organization.id, "run_id": computed["run_id"]})

    assert result.failed()
    assert isinstance(result.result, StateConflictError)


def test_post_sync_task(test_organization, shared_email_pair):
    payload = post_sync_resolution_task.apply(kwargs={"organization_id": test_organization.id}).get()

    assert payload["auto_applied"] == 1
    assert payload["pending_review"] == 0


def test_connector_sync_task(test_organization):
    feed = {"customers_import": [{"id": "gid://shopify/Customer/7", "email": "ada@example.com", "orders_count": 2}]}

    summary = run_connector_sync_task.apply(
        kwargs={"connector": "shopify", "organization_id": test_organization.id, "feed": feed}
    ).get()

    assert summary["status"] == "success"
    assert summary["resolution"]["total_candidates"] == 0
    customer = db.session.query(EcomCustomer).one()
    assert customer.external_id == "7"
    assert customer.orders_count == 2


def test_recover_task_releases_stuck_runs(test_organization):
    run = ResolutionRun(
        organization_id=test_organization.id,
        status=ResolutionRunStatus.APPLYING,
        applied_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    db.session.add(run)
    db.session.commit()

    payload = recover_interrupted_applies_task.apply(kwargs={"organization_id": test_organization.id}).get()

    assert payload == {"recovered_run_ids": [run.id]}
    db.session.expire_all()
    assert db.session.get(ResolutionRun, run.id).status == ResolutionRunStatus.PARTIALLY_APPLIED
