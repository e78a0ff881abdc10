# config/base.py
import os
import warnings

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

EXECUTION_MODES = ("thread", "celery", "inline")


def env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return default


def env_int(name, default, *, minimum=None):
    """Integer setting; unparsable or below-minimum values fall back to ``default``."""
    raw = (os.environ.get(name) or "").strip()
    try:
        number = int(raw)
    except ValueError:
        return default
    return default if minimum is not None and number < minimum else number


def env_float(name, default, *, minimum=0.0):
    raw = (os.environ.get(name) or "").strip()
    try:
        number = float(raw)
    except ValueError:
        return default
    return default if number < minimum else number


def _project_instance_dir():
    root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    path = os.path.join(root, "instance")
    os.makedirs(path, exist_ok=True)
    return path


def _secret_key(flask_env):
    secret = os.environ.get("SECRET_KEY")
    if secret:
        return secret
    if flask_env == "production":
        raise ValueError("SECRET_KEY environment variable is required in production.")
    if flask_env != "testing":
        warnings.warn("SECRET_KEY not set; using an insecure development key.", UserWarning)
    return "dev-secret-key-change-in-production"


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")

    SECRET_KEY = _secret_key(_flask_env)
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Feature flag and dispatch. An unknown mode is resolved in crm_app.utils.importer.
    IMPORTER_ENABLED = env_bool("IMPORTER_ENABLED", default=True)
    IMPORTER_WORKER_ENABLED = env_bool("IMPORTER_WORKER_ENABLED")
    IMPORTER_EXECUTION_MODE = os.environ.get("IMPORTER_EXECUTION_MODE")

    # Celery worker transport (SQLite file in the instance folder when unset)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_TASK_TIME_LIMIT = env_int("IMPORTER_TASK_TIME_LIMIT", 4 * 60 * 60, minimum=60)
    IMPORTER_TASK_SOFT_TIME_LIMIT = env_int("IMPORTER_TASK_SOFT_TIME_LIMIT", 4 * 60 * 60 - 300, minimum=60)

    # Uploads
    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_MAX_UPLOAD_MB = env_int("IMPORTER_MAX_UPLOAD_MB", 512, minimum=1)
    MAX_CONTENT_LENGTH = IMPORTER_MAX_UPLOAD_MB * 1024 * 1024

    # Pipeline defaults; each can be overridden per job
    IMPORTER_BATCH_SIZE = env_int("IMPORTER_BATCH_SIZE", 500, minimum=1)
    IMPORTER_QUEUE_SIZE = env_int("IMPORTER_QUEUE_SIZE", 2000, minimum=1)
    IMPORTER_NORMALIZER_WORKERS = env_int("IMPORTER_NORMALIZER_WORKERS", 1, minimum=1)
    IMPORTER_MAX_RETAINED_ERRORS = env_int("IMPORTER_MAX_RETAINED_ERRORS", 100, minimum=0)
    IMPORTER_MAX_CONSECUTIVE_BATCH_FAILURES = env_int("IMPORTER_MAX_CONSECUTIVE_BATCH_FAILURES", 3, minimum=1)
    IMPORTER_CROSS_JOB_DEDUPE = env_bool("IMPORTER_CROSS_JOB_DEDUPE", default=True)
    IMPORTER_AUTO_ENRICH = env_bool("IMPORTER_AUTO_ENRICH", default=True)
    IMPORTER_STRICT_EMAIL_VALIDATION = env_bool("IMPORTER_STRICT_EMAIL_VALIDATION")
    IMPORTER_SNAPSHOT_INTERVAL_SECONDS = env_float("IMPORTER_SNAPSHOT_INTERVAL_SECONDS", 2.0)

    # Progress fan-out
    IMPORTER_PROGRESS_QUEUE_SIZE = env_int("IMPORTER_PROGRESS_QUEUE_SIZE", 16, minimum=1)
    IMPORTER_PROGRESS_THROTTLE_MS = env_int("IMPORTER_PROGRESS_THROTTLE_MS", 200, minimum=0)
    IMPORTER_PROGRESS_HEARTBEAT_SECONDS = env_float("IMPORTER_PROGRESS_HEARTBEAT_SECONDS", 15.0)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(_project_instance_dir(), "crm_dev.db").replace("\\", "/"),
    )
    SQLALCHEMY_ECHO = env_bool("SQLALCHEMY_ECHO")
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        # Pipeline stages hand rows across threads; only the writer thread uses the session.
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 5}}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 5}}
    IMPORTER_EXECUTION_MODE = "inline"
    IMPORTER_SNAPSHOT_INTERVAL_SECONDS = 0.0
    IMPORTER_PROGRESS_THROTTLE_MS = 0
    IMPORTER_QUEUE_SIZE = 64


class ProductionConfig(Config):
    DEBUG = False
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "").replace("postgres://", "postgresql://", 1) or None
