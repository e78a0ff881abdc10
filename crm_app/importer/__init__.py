"""
Bulk CSV contact importer.

Call :func:`init_importer` once per application. With ``IMPORTER_ENABLED``
off, only a placeholder ``flask importer`` group is installed; otherwise the
HTTP blueprint and the full command group are mounted and the importer's
shared state (cancellation registry, progress publisher, Celery handle) is
kept in ``app.extensions['importer']``.
"""

from __future__ import annotations

from flask import Flask

from crm_app.utils.importer import get_execution_mode, is_importer_enabled

from .celery_app import get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .pipeline import ImportJobService, ImportOptions, ProgressPublisher, serialize_job
from .state import IMPORTER_EXTENSION_KEY, ensure_extension_state, get_cancellation_registry, get_progress_publisher
from .views import importer_blueprint

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "ImportJobService",
    "ImportOptions",
    "ProgressPublisher",
    "get_cancellation_registry",
    "get_celery_app",
    "get_progress_publisher",
    "serialize_job",
]


def _install_commands(app: Flask, enabled: bool) -> None:
    # Re-running init (tests) must replace, not duplicate, the group.
    app.cli.commands.pop(importer_cli.name, None)
    app.cli.add_command(importer_cli if enabled else get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    enabled = is_importer_enabled(app)
    mode = get_execution_mode(app)
    state = ensure_extension_state(app)
    state["enabled"] = enabled
    state["execution_mode"] = mode
    state["worker_enabled"] = bool(app.config.get("IMPORTER_WORKER_ENABLED"))

    _install_commands(app, enabled)
    if not enabled:
        app.logger.info("Contact importer disabled (IMPORTER_ENABLED is off).")
        return

    if importer_blueprint.name not in app.blueprints:
        app.register_blueprint(importer_blueprint)
    if mode == "celery":
        # Fail at startup rather than on the first upload when the broker config is broken.
        get_celery_app(app)
    app.logger.info("Contact importer ready (execution mode: %s)", mode)
