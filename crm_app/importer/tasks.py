"""
Importer Celery tasks.

``ingest_contacts_csv`` runs a pending import job inside the worker. The job
coordinator records failures on the job itself, so the task only has to
recover jobs left in a non-terminal state by an unexpected crash.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from crm_app.importer.pipeline.job_service import HEARTBEAT_TASK_NAME, INGEST_TASK_NAME, ImportJobService
from crm_app.models.base import db
from crm_app.models.importer.schema import ImportJob, ImportJobStatus


@shared_task(name=HEARTBEAT_TASK_NAME, bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """Heartbeat task used by ``flask importer worker ping``."""
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


def _mark_crashed(job_id: int, exc: Exception) -> None:
    db.session.rollback()
    job = db.session.get(ImportJob, job_id)
    if job is None or job.is_terminal:
        return
    job.transition_to(ImportJobStatus.FAILED, reason=f"unexpected: {exc}")
    db.session.commit()


@shared_task(name=INGEST_TASK_NAME, bind=True)
def ingest_contacts_csv(self, *, job_id: int, file_path: str, keep_file: bool = False) -> dict[str, Any]:
    """Execute a queued contact import job."""

    current_app.logger.info(
        "Importer worker picked up job %s",
        job_id,
        extra={"importer_job_id": job_id, "importer_task_id": self.request.id},
    )
    try:
        summary = ImportJobService(app=current_app._get_current_object()).execute(
            job_id,
            file_path,
            keep_file=keep_file,
        )
    except Exception as exc:
        _mark_crashed(job_id, exc)
        current_app.logger.exception(
            "Importer job crashed in worker",
            extra={"importer_job_id": job_id, "importer_error": str(exc)},
        )
        raise
    finally:
        db.session.remove()
    return summary.as_dict()
