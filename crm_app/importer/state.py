"""
Per-app importer state kept in ``app.extensions['importer']``.
"""

from __future__ import annotations

import threading
from typing import Any

from flask import Flask

IMPORTER_EXTENSION_KEY = "importer"


class CancellationRegistry:
    """In-process cancellation signals for running jobs, keyed by job id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[int, threading.Event] = {}

    def register(self, job_id: int) -> threading.Event:
        with self._lock:
            return self._events.setdefault(job_id, threading.Event())

    def signal(self, job_id: int) -> bool:
        """Set the job's event; False when the job is not running in this process."""
        with self._lock:
            event = self._events.get(job_id)
        if event is None:
            return False
        event.set()
        return True

    def release(self, job_id: int) -> None:
        with self._lock:
            self._events.pop(job_id, None)

    def __contains__(self, job_id: int) -> bool:
        with self._lock:
            return job_id in self._events


def ensure_extension_state(app: Flask) -> dict[str, Any]:
    state = app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "execution_mode": None,
            "celery_app": None,
            "progress": None,
            "cancellations": None,
        },
    )
    if state.get("progress") is None:
        from crm_app.importer.pipeline.progress import ProgressPublisher

        state["progress"] = ProgressPublisher.from_config(app.config)
    if state.get("cancellations") is None:
        state["cancellations"] = CancellationRegistry()
    return state


def get_progress_publisher(app: Flask):
    return ensure_extension_state(app)["progress"]


def get_cancellation_registry(app: Flask) -> CancellationRegistry:
    return ensure_extension_state(app)["cancellations"]
