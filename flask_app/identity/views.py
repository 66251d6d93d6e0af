"""
Identity resolution JSON API.

All endpoints act on the organization resolved by the org-context middleware.
Service errors propagate to the application error handlers, which render the
identity error taxonomy as JSON.
"""

from __future__ import annotations

import time
from http import HTTPStatus
from typing import Any

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from config.monitoring import IdentityMonitoring
from flask_app.middleware.org_context import get_current_actor, get_current_organization, require_organization_context
from flask_app.utils.feature_flags import require_feature_flag

from .celery_app import DEFAULT_QUEUE_NAME, EXTENSION_KEY, get_celery_app
from .pipeline.applier import ResolutionApplier
from .pipeline.candidate_service import CandidateFilters, CandidateService, serialize_run
from .pipeline.resolver import WaterfallResolver
from .pipeline.reverser import ResolutionReverser

identity_blueprint = Blueprint("identity", __name__, url_prefix="/api/identity")

IDENTITY_FLAG = "identity_resolution_enabled"


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _wants_async() -> bool:
    return request.args.get("async", "").strip().lower() in {"1", "true", "yes", "on"}


def _enqueue(task_name: str, **kwargs: Any):
    """Queue a task on the identity worker, or return an error response when it is unavailable."""
    state = current_app.extensions.get(EXTENSION_KEY, {})
    if not state.get("worker_enabled"):
        return _json_error("Identity worker is disabled; retry without async=true.", HTTPStatus.CONFLICT)
    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get(task_name) if celery_app else None
    if task is None:
        return _json_error(f"Task '{task_name}' is not registered.", HTTPStatus.SERVICE_UNAVAILABLE)
    result = task.apply_async(kwargs=kwargs)
    return jsonify({"status": "queued", "task_id": result.id, "task": task_name, "queue": DEFAULT_QUEUE_NAME}), 202


def _json_body() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


@identity_blueprint.get("/health")
def identity_healthcheck():
    state = current_app.extensions.get(EXTENSION_KEY, {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": state.get("enabled", False),
                "worker_enabled": state.get("worker_enabled", False),
                "sources": list(state.get("sources", ())),
            }
        ),
        200,
    )


@identity_blueprint.get("/worker_health")
def identity_worker_health():
    """Validate worker availability via the heartbeat task."""
    state = current_app.extensions.get(EXTENSION_KEY, {})
    timeout_seconds = float(request.args.get("timeout", 5))
    payload: dict[str, Any] = {
        "worker_enabled": state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }
    if not state.get("worker_enabled"):
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set IDENTITY_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("identity.healthcheck") if celery_app else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504


@identity_blueprint.post("/resolve")
@require_organization_context
@require_feature_flag(IDENTITY_FLAG)
def identity_compute():
    organization = get_current_organization()
    actor = get_current_actor()
    if _wants_async():
        return _enqueue("identity.resolution.compute", organization_id=organization.id, actor_id=actor)
    result = WaterfallResolver().compute(organization.id, actor)
    return jsonify({"status": "success", **result.as_dict()}), 201


@identity_blueprint.get("/resolve")
@require_organization_context
def identity_summary():
    organization = get_current_organization()
    return jsonify(CandidateService().get_resolution_summary(organization.id)), 200


@identity_blueprint.get("/runs")
@require_organization_context
def identity_runs():
    organization = get_current_organization()
    limit = request.args.get("limit", type=int) or 20
    runs = CandidateService().list_runs(organization.id, limit=min(limit, 100))
    return jsonify({"runs": [serialize_run(run, include_stats=False) for run in runs]}), 200


@identity_blueprint.get("/runs/<int:run_id>")
@require_organization_context
def identity_run_detail(run_id: int):
    organization = get_current_organization()
    service = CandidateService()
    run = service.get_run(organization.id, run_id)
    payload = serialize_run(run)
    payload["candidate_counts"] = service.candidate_status_counts(run.id)
    return jsonify(payload), 200


@identity_blueprint.get("/runs/<int:run_id>/candidates")
@require_organization_context
def identity_run_candidates(run_id: int):
    organization = get_current_organization()
    started = time.perf_counter()
    status_label = "success"
    try:
        filters = CandidateFilters.coerce(
            page=request.args.get("page"),
            page_size=request.args.get("page_size"),
            status=request.args.getlist("status") or None,
            needs_review=request.args.get("needs_review"),
            default_page_size=current_app.config.get("IDENTITY_CANDIDATES_PAGE_SIZE", 50),
            max_page_size=current_app.config.get("IDENTITY_CANDIDATES_MAX_PAGE_SIZE", 500),
        )
        result = CandidateService().list_candidates(organization.id, run_id, filters)
        return jsonify(result.as_dict()), 200
    except Exception:
        status_label = "error"
        raise
    finally:
        IdentityMonitoring.record_candidates_list(duration_seconds=time.perf_counter() - started, status=status_label)


@identity_blueprint.post("/runs/<int:run_id>/apply")
@require_organization_context
@require_feature_flag(IDENTITY_FLAG)
def identity_apply(run_id: int):
    organization = get_current_organization()
    actor = get_current_actor()
    body = _json_body()
    accepted_ids = body.get("accepted_ids")
    rejected_ids = body.get("rejected_ids")
    if _wants_async():
        return _enqueue(
            "identity.resolution.apply",
            organization_id=organization.id,
            run_id=run_id,
            actor_id=actor,
            accepted_ids=accepted_ids,
            rejected_ids=rejected_ids,
        )
    result = ResolutionApplier().apply(
        organization.id, run_id, actor, accepted_ids=accepted_ids, rejected_ids=rejected_ids
    )
    payload = result.as_dict()
    payload["run_status"] = payload.pop("status")
    payload["status"] = "warning" if result.errors else "success"
    return jsonify(payload), 200


@identity_blueprint.post("/runs/<int:run_id>/reverse")
@require_organization_context
@require_feature_flag(IDENTITY_FLAG)
def identity_reverse(run_id: int):
    organization = get_current_organization()
    actor = get_current_actor()
    if _wants_async():
        return _enqueue("identity.resolution.reverse", organization_id=organization.id, run_id=run_id, actor_id=actor)
    result = ResolutionReverser().reverse(organization.id, run_id, actor)
    payload = result.as_dict()
    payload["run_status"] = payload.pop("status")
    payload["status"] = "success"
    return jsonify(payload), 200
