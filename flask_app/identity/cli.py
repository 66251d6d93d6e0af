"""
``flask identity`` commands: run the resolution pipeline and syncs from a shell.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from flask_app.identity.celery_app import EXTENSION_KEY, get_celery_app
from flask_app.identity.errors import IdentityResolutionError
from flask_app.identity.pipeline.applier import apply_resolution, recover_interrupted_applies
from flask_app.identity.pipeline.candidate_service import CandidateFilters, CandidateService
from flask_app.identity.pipeline.resolver import compute_resolution
from flask_app.identity.pipeline.reverser import reverse_resolution
from flask_app.models import Organization
from flask_app.sync.orchestrator import SyncOrchestrator
from flask_app.sync.registry import resolve_connector

CLI_ACTOR = "cli"


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _parse_ids(raw: Optional[str]) -> Optional[list[int]]:
    if raw is None:
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError as exc:
        raise click.BadParameter(f"Expected comma-separated integers, got '{raw}'") from exc


def _resolve_org(org: str) -> int:
    organization = Organization.lookup(org)
    if organization is None:
        raise click.ClickException(f"Organization '{org}' not found.")
    return organization.id


def _run(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except IdentityResolutionError as exc:
        raise click.ClickException(str(exc)) from exc


org_option = click.option("--org", "org", required=True, help="Organization id or slug.")


@click.group(name="identity", invoke_without_command=True)
@click.pass_context
def identity_cli(ctx):
    """Identity resolution commands. Shows configured sources when run bare."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if ctx.invoked_subcommand is None:
        state = app.extensions.get(EXTENSION_KEY, {})
        click.echo("Identity sources: " + (", ".join(state.get("sources", ())) or "none"))


@identity_cli.command("compute")
@org_option
def identity_compute(org: str):
    """Compute a new resolution run."""
    result = _run(compute_resolution, _resolve_org(org), CLI_ACTOR)
    _echo_json(result.as_dict())


@identity_cli.command("apply")
@org_option
@click.option("--run-id", required=True, type=int)
@click.option("--accept", "accepted", help="Comma-separated candidate ids to apply (default: all not rejected).")
@click.option("--reject", "rejected", help="Comma-separated candidate ids to reject.")
def identity_apply(org: str, run_id: int, accepted: Optional[str], rejected: Optional[str]):
    """Apply a pending_review run."""
    result = _run(apply_resolution, _resolve_org(org), run_id, CLI_ACTOR, _parse_ids(accepted), _parse_ids(rejected))
    _echo_json(result.as_dict())
    if result.errors:
        click.echo(f"warning: {result.errors} candidates failed to apply", err=True)


@identity_cli.command("reverse")
@org_option
@click.option("--run-id", required=True, type=int)
def identity_reverse(org: str, run_id: int):
    """Reverse an applied run."""
    result = _run(reverse_resolution, _resolve_org(org), run_id, CLI_ACTOR)
    _echo_json(result.as_dict())


@identity_cli.command("recover")
@click.option("--org", "org", help="Limit to one organization id or slug.")
@click.option("--stale-after", type=int, help="Seconds since the apply was claimed (default IDENTITY_APPLY_STALE_SECONDS).")
def identity_recover(org: Optional[str], stale_after: Optional[int]):
    """Mark runs left in applying by a crashed apply as partially_applied."""
    org_id = _resolve_org(org) if org else None
    recovered = recover_interrupted_applies(org_id, stale_after_seconds=stale_after)
    _echo_json({"recovered_run_ids": recovered})


@identity_cli.command("candidates")
@org_option
@click.option("--run-id", required=True, type=int)
@click.option("--page", default=1, show_default=True, type=int)
@click.option("--page-size", default=50, show_default=True, type=int)
@click.option("--status", "status", help="Comma-separated candidate statuses.")
@click.option("--needs-review/--no-needs-review", default=None)
def identity_candidates(org: str, run_id: int, page: int, page_size: int, status: Optional[str], needs_review):
    """List a run's candidates, best tier first."""
    try:
        filters = CandidateFilters.coerce(page=page, page_size=page_size, status=status, needs_review=needs_review)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    result = _run(CandidateService().list_candidates, _resolve_org(org), run_id, filters)
    _echo_json(result.as_dict())


@identity_cli.command("summary")
@org_option
def identity_summary(org: str):
    """Record counts, active links and recent runs."""
    _echo_json(_run(CandidateService().get_resolution_summary, _resolve_org(org)))


@identity_cli.command("sync")
@org_option
@click.option("--connector", required=True, help="Connector name (crm, ecom, email_platform) or provider alias.")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="JSON file mapping step keys to lists of payload rows.",
)
def identity_sync(org: str, connector: str, file_path: Path):
    """Run a connector sync from a JSON payload file."""
    try:
        descriptor = resolve_connector(connector)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    try:
        feed = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{file_path} is not valid JSON: {exc}") from exc
    if not isinstance(feed, dict):
        raise click.ClickException("Sync payload must be a JSON object keyed by step.")
    summary = SyncOrchestrator(descriptor, _resolve_org(org), feed=feed, actor_id=CLI_ACTOR).run()
    _echo_json(summary.as_dict())


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException("Identity Celery app is unavailable. Ensure the identity package is initialised.")
    return celery_app


@identity_cli.group(name="worker")
def worker_group():
    """Manage the identity background worker."""


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("identity.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'identity.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    _echo_json(payload)
