# flask_app/routes/sync.py

"""
Connector sync API. ``POST /api/sync/<connector>`` streams progress as
server-sent events when the client asks for ``text/event-stream`` (or passes
``stream=true``), and otherwise returns the finished summary as JSON.
"""

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from flask_app.identity.celery_app import EXTENSION_KEY, get_celery_app
from flask_app.identity.errors import ValidationError
from flask_app.middleware.org_context import get_current_actor, get_current_organization, require_organization_context
from flask_app.sync import SyncOrchestrator, get_connector_registry, resolve_connector, stream_sync

sync_blueprint = Blueprint("sync", __name__, url_prefix="/api/sync")


def _serialize_connector(descriptor):
    return {
        "name": descriptor.name,
        "title": descriptor.title,
        "provider": descriptor.provider,
        "source_type": descriptor.source_type.value,
        "steps": [{"key": step.key, "label": step.label} for step in descriptor.steps],
        "triggers_resolution": descriptor.triggers_resolution,
        "summary": descriptor.summary,
    }


def _truthy(value):
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@sync_blueprint.get("/connectors")
def list_connectors():
    return jsonify({"connectors": [_serialize_connector(d) for d in get_connector_registry().values()]}), 200


@sync_blueprint.post("/<connector>")
@require_organization_context
def run_sync(connector):
    try:
        descriptor = resolve_connector(connector)
    except ValueError as e:
        return jsonify({"error": str(e), "code": "unknown_connector"}), 404

    body = request.get_json(silent=True) or {}
    feed = body.get("records") or {}
    if not isinstance(feed, dict):
        raise ValidationError("records must be an object keyed by step")

    organization = get_current_organization()
    actor = get_current_actor()

    if _truthy(request.args.get("async")):
        state = current_app.extensions.get(EXTENSION_KEY, {})
        celery_app = get_celery_app(current_app) if state.get("worker_enabled") else None
        task = celery_app.tasks.get("identity.sync.run_connector") if celery_app else None
        if task is None:
            return jsonify({"error": "Sync worker is unavailable; retry without async=true."}), 409
        result = task.apply_async(
            kwargs={"connector": descriptor.name, "organization_id": organization.id, "feed": feed, "actor_id": actor}
        )
        return jsonify({"status": "queued", "task_id": result.id}), 202

    wants_stream = _truthy(request.args.get("stream")) or request.accept_mimetypes.best == "text/event-stream"
    if wants_stream:
        app = current_app._get_current_object()
        timeout = current_app.config.get("SYNC_STREAM_TIMEOUT_SECONDS", 300)
        frames = stream_sync(app, descriptor, organization.id, feed=feed, actor_id=actor, timeout=timeout)
        return Response(
            stream_with_context(frames),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    summary = SyncOrchestrator(descriptor, organization.id, feed=feed, actor_id=actor).run()
    return jsonify(summary.as_dict()), 200


def register_sync_routes(app):
    if sync_blueprint.name not in app.blueprints:
        app.register_blueprint(sync_blueprint)
