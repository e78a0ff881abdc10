# conftest.py

import io
import os

import pytest

# app.py picks its config class from FLASK_ENV at import time
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from crm_app.importer.pipeline import ImportJobService  # noqa: E402
from crm_app.models import db  # noqa: E402


@pytest.fixture(scope="function")
def app(tmp_path):
    """The module-level app, reconfigured for inline imports with an empty database per test."""
    flask_app.config.update(
        {
            "TESTING": True,
            "IMPORTER_ENABLED": True,
            "IMPORTER_EXECUTION_MODE": "inline",
            "IMPORTER_UPLOAD_DIR": str(tmp_path / "uploads"),
            "IMPORTER_SNAPSHOT_INTERVAL_SECONDS": 0.0,
            "IMPORTER_PROGRESS_THROTTLE_MS": 0,
            "IMPORTER_BATCH_SIZE": 500,
            "IMPORTER_CROSS_JOB_DEDUPE": True,
            "IMPORTER_AUTO_ENRICH": True,
        }
    )

    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Keep an application context pushed so tests can use db.session directly."""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def job_service(app):
    return ImportJobService(app=app)


@pytest.fixture
def csv_bytes():
    """Build an in-memory CSV stream from text lines."""

    def _build(*lines: str, newline: str = "\n") -> io.BytesIO:
        return io.BytesIO((newline.join(lines) + newline).encode("utf-8"))

    return _build
