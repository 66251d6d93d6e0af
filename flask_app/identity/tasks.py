"""
Identity Celery tasks.

Each task wraps the matching service call; results are returned as plain
dicts so they serialize through the result backend.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task

from flask_app.identity.pipeline.applier import apply_resolution, recover_interrupted_applies
from flask_app.identity.pipeline.post_sync import trigger_post_sync_resolution
from flask_app.identity.pipeline.resolver import compute_resolution
from flask_app.identity.pipeline.reverser import reverse_resolution
from flask_app.sync.orchestrator import SyncOrchestrator
from flask_app.sync.registry import resolve_connector


@shared_task(name="identity.healthcheck", bind=True)
def identity_healthcheck(self) -> dict[str, Any]:
    """Heartbeat used by worker health checks."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="identity.resolution.compute", bind=True)
def compute_resolution_task(self, *, organization_id: int, actor_id: str | None = None) -> dict[str, Any]:
    return compute_resolution(organization_id, actor_id).as_dict()


@shared_task(name="identity.resolution.apply", bind=True)
def apply_resolution_task(
    self,
    *,
    organization_id: int,
    run_id: int,
    actor_id: str | None = None,
    accepted_ids: list[int] | None = None,
    rejected_ids: list[int] | None = None,
) -> dict[str, Any]:
    return apply_resolution(organization_id, run_id, actor_id, accepted_ids, rejected_ids).as_dict()


@shared_task(name="identity.resolution.reverse", bind=True)
def reverse_resolution_task(self, *, organization_id: int, run_id: int, actor_id: str | None = None) -> dict[str, Any]:
    return reverse_resolution(organization_id, run_id, actor_id).as_dict()


@shared_task(name="identity.resolution.post_sync", bind=True)
def post_sync_resolution_task(self, *, organization_id: int, actor_id: str | None = None) -> dict[str, Any]:
    return trigger_post_sync_resolution(organization_id, actor_id).as_dict()


@shared_task(name="identity.sync.run_connector", bind=True)
def run_connector_sync_task(
    self,
    *,
    connector: str,
    organization_id: int,
    feed: dict[str, list[dict[str, Any]]] | None = None,
    actor_id: str | None = None,
) -> dict[str, Any]:
    descriptor = resolve_connector(connector)
    return SyncOrchestrator(descriptor, organization_id, feed=feed, actor_id=actor_id).run().as_dict()


@shared_task(name="identity.resolution.recover", bind=True)
def recover_interrupted_applies_task(self, *, organization_id: int | None = None) -> dict[str, Any]:
    return {"recovered_run_ids": recover_interrupted_applies(organization_id)}
