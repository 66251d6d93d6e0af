# flask_app/routes/__init__.py
"""
Application routes package
"""

from .api import register_api_routes
from .policies import register_policy_routes
from .sync import register_sync_routes


def init_routes(app):
    """Initialize all application routes"""
    register_api_routes(app)
    register_policy_routes(app)
    register_sync_routes(app)
