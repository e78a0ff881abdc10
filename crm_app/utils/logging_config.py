# crm_app/utils/logging_config.py
"""
Application logging setup.

Console and rotating-file handlers are attached to the Flask app logger and to
the ``crm_app`` package logger. ``LOG_FORMAT=json`` emits one JSON object per
line including any ``extra=`` fields (``importer_job_id`` and friends).
"""

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from flask import current_app, has_app_context

_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
    }
)

TEXT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_HANDLER_MARKER = "_crm_logging_handler"


class JSONFormatter(logging.Formatter):
    """Format log records as structured JSON lines."""

    def __init__(self, app_name: str = "crm"):
        super().__init__()
        self.app_name = app_name

    def format(self, record):
        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "app": self.app_name,
            "msg": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _build_formatter(app):
    if str(app.config.get("LOG_FORMAT", "json")).lower() == "json":
        return JSONFormatter(app.config.get("APP_NAME", "crm"))
    return logging.Formatter(TEXT_FORMAT)


def _remove_managed_handlers(logger):
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()


def setup_logging(app):
    """
    Configure logging handlers for ``app`` from its monitoring config.

    Safe to call repeatedly; handlers installed by a previous call are
    replaced rather than duplicated.
    """
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    formatter = _build_formatter(app)

    handlers = []
    if app.config.get("ENABLE_CONSOLE_LOGGING", True):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    if app.config.get("ENABLE_FILE_LOGGING", False):
        log_dir = app.config.get("LOG_DIR", "logs")
        if not os.path.isabs(log_dir):
            log_dir = os.path.join(app.root_path, log_dir)
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, app.config.get("LOG_FILE_NAME", "crm.log")),
            maxBytes=app.config.get("LOG_FILE_MAX_BYTES", 10485760),
            backupCount=app.config.get("LOG_FILE_BACKUP_COUNT", 10),
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    for logger in (app.logger, logging.getLogger("crm_app")):
        _remove_managed_handlers(logger)
        logger.setLevel(level)
        for handler in handlers:
            setattr(handler, _HANDLER_MARKER, True)
            logger.addHandler(handler)

    # The package logger has its own handlers; avoid double emission via root.
    logging.getLogger("crm_app").propagate = not handlers

    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    app.logger.debug("Logging configured (level=%s, format=%s)", level_name, app.config.get("LOG_FORMAT"))


def get_importer_logger():
    """Flask app logger inside an app context, the ``crm_app.importer`` logger otherwise."""
    if has_app_context():
        return current_app.logger
    return logging.getLogger("crm_app.importer")
