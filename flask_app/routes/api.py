# flask_app/routes/api.py

"""
Operational endpoints: health and Prometheus metrics.
"""

from flask import Blueprint, Response, current_app, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from flask_app.models import db

api_blueprint = Blueprint("api", __name__)


@api_blueprint.get("/health")
def health():
    """Liveness plus a trivial database round-trip."""
    database = "ok"
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db.session.rollback()
        current_app.logger.error(f"Health check database error: {str(e)}")
        database = "error"
    status = 200 if database == "ok" else 503
    return (
        jsonify(
            {
                "status": "ok" if status == 200 else "degraded",
                "database": database,
                "app": current_app.config.get("APP_NAME"),
                "version": current_app.config.get("APP_VERSION"),
            }
        ),
        status,
    )


@api_blueprint.get("/metrics")
def metrics():
    return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


def register_api_routes(app):
    """Register API routes"""
    if api_blueprint.name not in app.blueprints:
        app.register_blueprint(api_blueprint)
