# app.py

import logging
import os
from http import HTTPStatus

from dotenv import load_dotenv
from flask import Flask, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import event
from werkzeug.exceptions import HTTPException

# .env must be loaded before config classes read the environment
load_dotenv()

from config import DevelopmentConfig, ProductionConfig, TestingConfig  # noqa: E402
from config.monitoring import (  # noqa: E402
    DevelopmentMonitoringConfig,
    ProductionMonitoringConfig,
    TestingMonitoringConfig,
)
from config.validation import validate_and_exit  # noqa: E402
from crm_app.importer import init_importer  # noqa: E402
from crm_app.models import db  # noqa: E402
from crm_app.utils.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)

CONFIGS = {
    "production": (ProductionConfig, ProductionMonitoringConfig),
    "testing": (TestingConfig, TestingMonitoringConfig),
    "development": (DevelopmentConfig, DevelopmentMonitoringConfig),
}


def _sqlite_pragmas(*, foreign_keys: bool):
    """Connection hook: WAL lets the SSE stream read while the import writes."""

    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver hook
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            if foreign_keys:
                cursor.execute("PRAGMA foreign_keys=ON")
        except Exception as exc:
            logger.warning("Failed to apply SQLite PRAGMAs: %s", exc)
        finally:
            cursor.close()

    return _on_connect


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def http_error(error):
        return jsonify({"error": error.description}), error.code

    @app.errorhandler(HTTPStatus.INTERNAL_SERVER_ERROR)
    def internal_error(error):
        db.session.rollback()
        return jsonify({"error": "Internal server error."}), HTTPStatus.INTERNAL_SERVER_ERROR


def _register_metrics(app: Flask) -> None:
    if not app.config.get("MONITORING_ENABLED"):
        return

    @app.get(app.config.get("METRICS_ENDPOINT", "/metrics"))
    def prometheus_metrics():
        return Response(generate_latest(), mimetype=CONTENT_TYPE_LATEST)


flask_env = os.environ.get("FLASK_ENV", "development")
if flask_env == "production":
    validate_and_exit(flask_env)

app = Flask(__name__)
for config_object in CONFIGS.get(flask_env, CONFIGS["development"]):
    app.config.from_object(config_object)

db.init_app(app)
setup_logging(app)

with app.app_context():
    if db.engine.url.drivername.startswith("sqlite"):
        event.listen(db.engine, "connect", _sqlite_pragmas(foreign_keys=not app.config.get("TESTING", False)))
    if not app.config.get("TESTING", False):
        db.create_all()

init_importer(app)
_register_metrics(app)
_register_error_handlers(app)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
