"""
Celery wiring for the contact import worker.

Only created when the importer runs in ``celery`` execution mode (or when a
worker command asks for it). Without explicit URLs the broker and result
backend share one SQLite file in the instance folder, so a local worker needs
nothing beyond the application itself.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from celery import Celery
from flask import Flask
from kombu import Exchange, Queue

DEFAULT_QUEUE_NAME = "imports"
DEFAULT_BROKER_DB = "celery-imports.sqlite"

# Jobs on large files may take hours; the soft limit leaves time to record the failure.
DEFAULT_TIME_LIMIT = 4 * 60 * 60
SOFT_LIMIT_MARGIN = 5 * 60


@dataclass(frozen=True)
class WorkerSettings:
    """Connection and runtime settings resolved from the Flask config."""

    broker_url: str
    result_backend: str
    time_limit: int
    soft_time_limit: int
    overrides: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_app(cls, app: Flask) -> "WorkerSettings":
        config = app.config
        broker_db = _broker_database(app)
        time_limit = int(config.get("IMPORTER_TASK_TIME_LIMIT") or DEFAULT_TIME_LIMIT)
        soft_limit = config.get("IMPORTER_TASK_SOFT_TIME_LIMIT")
        return cls(
            broker_url=config.get("CELERY_BROKER_URL") or f"sqla+sqlite:///{broker_db}",
            result_backend=config.get("CELERY_RESULT_BACKEND") or f"db+sqlite:///{broker_db}",
            time_limit=time_limit,
            soft_time_limit=int(soft_limit) if soft_limit else max(1, time_limit - SOFT_LIMIT_MARGIN),
            overrides=_config_overrides(app),
        )

    def celery_conf(self) -> dict[str, Any]:
        exchange = Exchange(DEFAULT_QUEUE_NAME, type="direct")
        conf: dict[str, Any] = {
            "task_queues": (Queue(DEFAULT_QUEUE_NAME, exchange, routing_key=DEFAULT_QUEUE_NAME),),
            "task_default_queue": DEFAULT_QUEUE_NAME,
            "task_default_exchange": DEFAULT_QUEUE_NAME,
            "task_default_routing_key": DEFAULT_QUEUE_NAME,
            # One job per worker slot; a job is acknowledged only after it finishes.
            "task_acks_late": True,
            "worker_prefetch_multiplier": 1,
            "task_track_started": True,
            "task_time_limit": self.time_limit,
            "task_soft_time_limit": self.soft_time_limit,
            "broker_connection_retry_on_startup": True,
            "worker_hijack_root_logger": False,
            "worker_task_log_format": "[%(asctime)s: %(levelname)s][%(task_name)s(%(task_id)s)] %(message)s",
        }
        conf.update(self.overrides)
        return conf


def _broker_database(app: Flask) -> str:
    configured = app.config.get("CELERY_SQLITE_PATH")
    path = Path(configured) if configured else Path(DEFAULT_BROKER_DB)
    if not path.is_absolute():
        path = Path(app.instance_path) / path
    path.parent.mkdir(parents=True, exist_ok=True)
    # SQLAlchemy URLs want forward slashes on every platform.
    return path.as_posix()


def _config_overrides(app: Flask) -> dict[str, Any]:
    raw = app.config.get("CELERY_CONFIG")
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            app.logger.warning("Ignoring CELERY_CONFIG: value is not valid JSON.")
            return {}
    if not isinstance(raw, dict):
        app.logger.warning("Ignoring CELERY_CONFIG: expected a JSON object.")
        return {}
    return dict(raw)


def create_celery_app(app: Flask) -> Celery:
    """Build a Celery instance whose tasks run inside ``app``'s application context."""
    settings = WorkerSettings.from_app(app)
    celery_app = Celery(
        app.import_name,
        broker=settings.broker_url,
        backend=settings.result_backend,
        include=("crm_app.importer.tasks",),
    )
    celery_app.conf.update(settings.celery_conf())

    class AppContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = AppContextTask  # type: ignore[assignment]

    if not app.config.get("SQLALCHEMY_ECHO"):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    app.logger.info(
        "Importer worker transport configured",
        extra={
            "importer_broker_url": settings.broker_url,
            "importer_result_backend": settings.result_backend,
            "importer_task_time_limit": settings.time_limit,
        },
    )
    celery_app.loader.import_default_modules()
    return celery_app


def get_celery_app(app: Flask) -> Celery | None:
    """
    Return the importer's Celery instance, creating it on first use.

    Returns None when the importer extension is not registered or disabled.
    """
    state: dict[str, Any] | None = app.extensions.get("importer")
    if not state or not state.get("enabled"):
        return None
    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]
