# flask_app/utils/error_handler.py

"""
JSON error responses for the API.

Identity errors carry their own HTTP status; filter coercion raises plain
``ValueError``; anything unexpected rolls back the session and becomes a 500.
"""

from flask import jsonify
from werkzeug.exceptions import HTTPException

from flask_app.identity.errors import IdentityResolutionError
from flask_app.models import db


def init_error_handlers(app):
    """Register JSON error handlers on ``app``."""

    @app.errorhandler(IdentityResolutionError)
    def handle_identity_error(error):
        status = int(error.http_status)
        log = app.logger.error if status >= 500 else app.logger.info
        log(f"{error.code}: {error}", extra={"error_code": error.code, "http_status": status})
        return jsonify(error.to_dict()), status

    @app.errorhandler(ValueError)
    def handle_value_error(error):
        return jsonify({"error": str(error), "code": "invalid_request"}), 400

    @app.errorhandler(HTTPException)
    def handle_http_exception(error):
        return jsonify({"error": error.description, "code": error.name.lower().replace(" ", "_")}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        db.session.rollback()
        app.logger.error(f"Unhandled error: {error}", exc_info=error)
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500
