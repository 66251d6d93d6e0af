import json
from datetime import datetime, timedelta, timezone

import pytest

from flask_app.models import CrmContact, GraphEdge, ResolutionRun, ResolutionRunStatus, db

pytestmark = pytest.mark.integration


def _invoke_json(runner, *args):
    result = runner.invoke(args=["identity", *args])
    assert result.exit_code == 0, result.output
    return json.loads(result.output)


def test_bare_group_lists_sources(runner):
    result = runner.invoke(args=["identity"])

    assert result.exit_code == 0
    assert "Identity sources: crm, ecom, email_platform" in result.output


def test_compute_apply_reverse_by_slug(runner, test_organization, shared_email_pair):
    computed = _invoke_json(runner, "compute", "--org", "acme")
    assert computed["total_candidates"] == 1

    applied = _invoke_json(runner, "apply", "--org", "acme", "--run-id", str(computed["run_id"]))
    assert applied["status"] == "applied"
    assert applied["edges_created"] == 1

    reversed_ = _invoke_json(runner, "reverse", "--org", str(test_organization.id), "--run-id", str(computed["run_id"]))
    assert reversed_["status"] == "reversed"

    db.session.expire_all()
    run = db.session.get(ResolutionRun, computed["run_id"])
    assert run.status == ResolutionRunStatus.REVERSED
    assert run.created_by == "cli"
    assert db.session.query(GraphEdge).filter(GraphEdge.valid_until.is_(None)).count() == 0


def test_apply_conflict_is_reported_as_cli_error(runner, test_organization, shared_email_pair):
    computed = _invoke_json(runner, "compute", "--org", "acme")

    result = runner.invoke(args=["identity", "reverse", "--org", "acme", "--run-id", str(computed["run_id"])])

    assert result.exit_code != 0
    assert "pending_review" in result.output


def test_apply_rejects_malformed_id_list(runner, test_organization, shared_email_pair):
    computed = _invoke_json(runner, "compute", "--org", "acme")

    result = runner.invoke(
        args=["identity", "apply", "--org", "acme", "--run-id", str(computed["run_id"]), "--accept", "1,x"]
    )

    assert result.exit_code != 0
    assert "comma-separated integers" in result.output


def test_unknown_organization(runner):
    result = runner.invoke(args=["identity", "compute", "--org", "nobody"])

    assert result.exit_code != 0
    assert "Organization 'nobody' not found" in result.output


def test_candidates_and_summary(runner, test_organization, shared_email_pair):
    computed = _invoke_json(runner, "compute", "--org", "acme")

    listing = _invoke_json(
        runner, "candidates", "--org", "acme", "--run-id", str(computed["run_id"]), "--status", "pending"
    )
    assert listing["total"] == 1
    assert listing["candidates"][0]["tier"] == "exact_email"

    summary = _invoke_json(runner, "summary", "--org", "acme")
    assert summary["total_records"] == 2
    assert summary["pending_run"]["id"] == computed["run_id"]


def test_sync_from_payload_file(runner, test_organization, tmp_path):
    feed = tmp_path / "crm.json"
    feed.write_text(
        json.dumps({"contacts_import": [{"id": "hs-1", "first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com"}]}),
        encoding="utf-8",
    )

    result = _invoke_json(runner, "sync", "--org", "acme", "--connector", "crm", "--file", str(feed))

    assert result["status"] == "success"
    assert result["steps"]["contacts_import"]["created"] == 1
    assert db.session.query(CrmContact).count() == 1


def test_sync_rejects_unknown_connector(runner, test_organization, tmp_path):
    feed = tmp_path / "feed.json"
    feed.write_text("{}", encoding="utf-8")

    result = runner.invoke(args=["identity", "sync", "--org", "acme", "--connector", "ledger", "--file", str(feed)])

    assert result.exit_code != 0


def test_recover_marks_stuck_runs_partially_applied(runner, test_organization):
    stuck = ResolutionRun(
        organization_id=test_organization.id,
        status=ResolutionRunStatus.APPLYING,
        applied_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )
    db.session.add(stuck)
    db.session.commit()

    result = _invoke_json(runner, "recover", "--org", "acme")

    assert result == {"recovered_run_ids": [stuck.id]}
    db.session.expire_all()
    assert db.session.get(ResolutionRun, stuck.id).status == ResolutionRunStatus.PARTIALLY_APPLIED
