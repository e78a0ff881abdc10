"""Feature flag and execution-mode lookups for the contact importer."""

from __future__ import annotations

from flask import current_app

from config.base import EXECUTION_MODES


def is_importer_enabled(app=None) -> bool:
    config = (app or current_app).config
    return bool(config.get("IMPORTER_ENABLED", False))


def get_execution_mode(app=None) -> str:
    """
    Resolve how new jobs run: ``inline``, ``thread`` or ``celery``.

    An unset or unknown ``IMPORTER_EXECUTION_MODE`` falls back to ``celery``
    when a worker is enabled and to ``thread`` otherwise.
    """
    config = (app or current_app).config
    requested = str(config.get("IMPORTER_EXECUTION_MODE") or "").strip().lower()
    if requested in EXECUTION_MODES:
        return requested
    return "celery" if config.get("IMPORTER_WORKER_ENABLED") else "thread"
