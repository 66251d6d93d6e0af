# conftest.py

import os
import tempfile

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig.
# The database is a temp file (not :memory:) so sync worker threads and eager
# Celery tasks get their own connections to the same data.
os.environ["FLASK_ENV"] = "testing"
_db_fd, _TEST_DB_PATH = tempfile.mkstemp(prefix="meridian_test_", suffix=".db")
os.environ["TEST_DATABASE_URL"] = "sqlite:///" + _TEST_DB_PATH.replace("\\", "/")

# Now import app and other modules after environment is set
from app import app as flask_app  # noqa: E402
from flask_app.models import Organization, db  # noqa: E402
from flask_app.policy.engine import get_policy_cache  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without database access")
    config.addinivalue_line("markers", "integration: tests touching the database or HTTP layer")
    config.addinivalue_line("markers", "slow: tests that spin up threads or workers")


def pytest_sessionfinish(session, exitstatus):
    try:
        os.close(_db_fd)
    except OSError:
        pass
    try:
        if os.path.exists(_TEST_DB_PATH):
            os.unlink(_TEST_DB_PATH)
    except OSError:
        pass


@pytest.fixture(scope="function")
def app():
    """Test application with freshly created tables for every test"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "WARNING",
            "IDENTITY_ENABLED": True,
            "IDENTITY_WORKER_ENABLED": False,
            "IDENTITY_SOURCES": ("crm", "ecom", "email_platform"),
            "IDENTITY_REVIEW_THRESHOLD": 0.85,
            "IDENTITY_AUTO_APPLY_ENABLED": True,
            "IDENTITY_AUTO_APPLY_THRESHOLD": 0.90,
            "IDENTITY_CANDIDATE_BATCH_SIZE": 500,
        }
    )
    flask_app.extensions["identity"]["worker_enabled"] = False
    get_policy_cache(flask_app).clear()

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def test_organization():
    """Active tenant used by most tests"""
    organization = Organization(name="Acme Outfitters", slug="acme", is_active=True)
    db.session.add(organization)
    db.session.commit()
    return organization


@pytest.fixture
def other_organization():
    organization = Organization(name="Globex Supply", slug="globex", is_active=True)
    db.session.add(organization)
    db.session.commit()
    return organization


@pytest.fixture
def org_headers(test_organization):
    return {"X-Org-Id": str(test_organization.id), "X-Actor-Id": "user-42"}
