# conftest.py

import os
import tempfile
import uuid

import pytest

# Set testing environment BEFORE importing app so config classes pick TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import create_app  # noqa: E402
from ptrs_app.models import Tenant, db  # noqa: E402
from ptrs_app.tenancy import TenantContext  # noqa: E402


@pytest.fixture(scope="function")
def app():
    """Create a Flask application backed by its own temporary SQLite file"""
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")
    celery_dir = tempfile.mkdtemp(prefix="ptrs_celery_")

    try:
        flask_app = create_app(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SQLALCHEMY_ECHO": False,
                "ENABLE_FILE_LOGGING": False,
                "ENABLE_CONSOLE_LOGGING": False,
                "LOG_LEVEL": "DEBUG",
                "IMPORTER_ENABLED": True,
                "IMPORTER_WORKER_ENABLED": False,
                "CELERY_SQLITE_PATH": os.path.join(celery_dir, "celery.sqlite"),
                "CELERY_CONFIG": {"task_always_eager": True, "task_eager_propagates": True},
            }
        )
        with flask_app.app_context():
            db.create_all()
            yield flask_app
            db.session.remove()
            db.drop_all()
            db.engine.dispose()
    finally:
        try:
            os.close(db_fd)
        except OSError:
            pass
        for path in (temp_db, f"{temp_db}-wal", f"{temp_db}-shm"):
            try:
                if os.path.exists(path):
                    os.unlink(path)
            except OSError:
                pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def tenant():
    """Persist an active tenant"""
    record = Tenant(name="Acme Holdings Pty Ltd", slug="acme", is_active=True)
    db.session.add(record)
    db.session.commit()
    return record


@pytest.fixture
def tenant_context():
    return TenantContext()
