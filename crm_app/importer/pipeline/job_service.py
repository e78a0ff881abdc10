"""
Service layer for contact import jobs.

Creates jobs, dispatches them according to ``IMPORTER_EXECUTION_MODE`` (a
background thread, the Celery worker, or inline), serializes them for the API
and CLI, and routes cancellation requests to whichever process runs the job.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Mapping

from flask import Flask, current_app
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from crm_app.importer.state import get_cancellation_registry, get_progress_publisher
from crm_app.importer.utils import cleanup_upload
from crm_app.models import db
from crm_app.models.importer.schema import ImportJob, ImportJobStateError, ImportJobStatus
from crm_app.utils.importer import get_execution_mode
from crm_app.utils.logging_config import get_importer_logger

from .coordinator import BatchListener, ImportJobCoordinator, ImportSummary
from .errors import DestinationUnavailableError, InvalidImportOptionsError, SourceUnreadableError
from .options import ImportOptions

INGEST_TASK_NAME = "importer.pipeline.ingest_contacts_csv"
HEARTBEAT_TASK_NAME = "importer.healthcheck"


def _isoformat(value) -> str | None:
    return value.isoformat() if value is not None else None


def serialize_job(job: ImportJob, *, include_errors: bool = True) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": job.id,
        "filename": job.filename,
        "status": job.status.value,
        "total_rows": job.total_rows,
        "processed_rows": job.processed_rows,
        "successful_rows": job.successful_rows,
        "error_rows": job.error_rows,
        "duplicate_rows": job.duplicate_rows,
        "field_mapping": job.field_mapping,
        "options": job.options_json,
        "failure_reason": job.failure_reason,
        "cancel_requested": job.cancel_requested_at is not None,
        "created_at": _isoformat(job.created_at),
        "started_at": _isoformat(job.started_at),
        "completed_at": _isoformat(job.completed_at),
    }
    if include_errors:
        payload["errors"] = job.errors or {"details": [], "warnings": [], "retained": 0, "truncated": False}
    return payload


class ImportJobService:
    """Create, run, inspect, and cancel contact import jobs."""

    def __init__(self, session: Session | None = None, *, app: Flask | None = None) -> None:
        self.session: Session = session or db.session
        self.app = app

    @property
    def _app(self) -> Flask:
        return self.app or current_app._get_current_object()

    def create_job(
        self,
        filename: str,
        *,
        field_mapping: Mapping[str, str] | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> ImportJob:
        """
        Persist a pending job with its effective options.

        Raises ``InvalidImportOptionsError`` for bad option overrides; mapping
        problems are reported by failing the job when it runs.
        """

        options = ImportOptions.from_config(self._app.config, overrides)
        job = ImportJob(
            filename=filename,
            status=ImportJobStatus.PENDING,
            field_mapping=dict(field_mapping) if field_mapping is not None else None,
            options_json=options.as_dict(),
        )
        self.session.add(job)
        self.session.commit()
        get_importer_logger().info(
            "Import job %s created",
            job.id,
            extra={"importer_job_id": job.id, "importer_filename": filename},
        )
        return job

    def get_job(self, job_id: int) -> ImportJob:
        job = self.session.get(ImportJob, job_id)
        if job is None:
            raise NoResultFound(f"Import job {job_id} not found.")
        return job

    def options_for(self, job: ImportJob) -> ImportOptions:
        stored = dict(job.options_json or {})
        known = set(ImportOptions.__dataclass_fields__)
        unknown = sorted(set(stored) - known)
        if unknown:
            raise InvalidImportOptionsError(f"Stored options contain unknown keys: {', '.join(unknown)}")
        return ImportOptions(**stored).validated()

    def execute(
        self,
        job_id: int,
        file_path: str | Path,
        *,
        keep_file: bool = True,
        batch_listener: BatchListener | None = None,
    ) -> ImportSummary:
        """Run a pending job to completion in the current thread."""

        app = self._app
        job = self.get_job(job_id)
        registry = get_cancellation_registry(app)
        cancel_event = registry.register(job.id)
        path = Path(file_path)
        try:
            try:
                options = self.options_for(job)
            except InvalidImportOptionsError as exc:
                return ImportJobCoordinator(job, options=ImportOptions(), session=self.session).abort(exc)

            coordinator = ImportJobCoordinator(
                job,
                options=options,
                field_mapping=job.field_mapping,
                session=self.session,
                publisher=get_progress_publisher(app),
                cancel_event=cancel_event,
                batch_listener=batch_listener,
            )
            try:
                handle = path.open("rb")
            except OSError as exc:
                return coordinator.abort(SourceUnreadableError(f"Unable to open {path.name}: {exc}"))
            try:
                return coordinator.run(handle)
            finally:
                coordinator.close_source(handle)
        finally:
            registry.release(job_id)
            if not keep_file:
                cleanup_upload(path)

    def start(
        self,
        job: ImportJob,
        file_path: str | Path,
        *,
        keep_file: bool = False,
        mode: str | None = None,
    ) -> dict[str, Any]:
        """
        Dispatch a pending job according to the execution mode.

        Returns a small payload describing how the job was started.
        """

        app = self._app
        mode = mode or get_execution_mode(app)
        payload: dict[str, Any] = {"job_id": job.id, "mode": mode}

        if mode == "inline":
            summary = self.execute(job.id, file_path, keep_file=keep_file)
            payload["summary"] = summary.as_dict()
            return payload

        if mode == "celery":
            from crm_app.importer.celery_app import get_celery_app

            celery_app = get_celery_app(app)
            if celery_app is None:
                raise RuntimeError("Importer Celery app is unavailable.")
            try:
                async_result = celery_app.send_task(
                    INGEST_TASK_NAME,
                    kwargs={"job_id": job.id, "file_path": str(file_path), "keep_file": keep_file},
                )
            except Exception as exc:
                ImportJobCoordinator(job, options=self.options_for(job), session=self.session).abort(
                    DestinationUnavailableError(f"Unable to queue import job: {exc}")
                )
                raise
            payload["task_id"] = async_result.id
            get_importer_logger().info(
                "Import job %s queued",
                job.id,
                extra={"importer_job_id": job.id, "importer_task_id": async_result.id},
            )
            return payload

        job_id = job.id
        thread = threading.Thread(
            target=_run_in_app_context,
            args=(app, job_id, str(file_path), keep_file),
            name=f"importer-job-{job_id}",
            daemon=True,
        )
        thread.start()
        return payload

    def request_cancel(self, job_id: int) -> ImportJob:
        """
        Ask a running or pending job to stop.

        The persisted flag reaches jobs running in other processes; the
        in-process signal reaches jobs running here immediately.
        """

        job = self.get_job(job_id)
        if job.is_terminal:
            raise ImportJobStateError(f"Import job {job_id} is already {job.status.value}.")
        job.request_cancel()
        self.session.commit()
        signalled = get_cancellation_registry(self._app).signal(job_id)
        get_importer_logger().info(
            "Cancellation requested for import job %s",
            job_id,
            extra={"importer_job_id": job_id, "importer_cancel_signalled": signalled},
        )
        return job


def _run_in_app_context(app: Flask, job_id: int, file_path: str, keep_file: bool) -> None:
    with app.app_context():
        try:
            ImportJobService(app=app).execute(job_id, file_path, keep_file=keep_file)
        except Exception:
            app.logger.exception("Background import job %s crashed", job_id, extra={"importer_job_id": job_id})
        finally:
            db.session.remove()


__all__ = ["INGEST_TASK_NAME", "ImportJobService", "serialize_job"]
