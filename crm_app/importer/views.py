"""
Importer blueprint: health checks, CSV analysis, job creation, job status,
cancellation, and a Server-Sent Events stream of job progress.
"""

from __future__ import annotations

import json
import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context
from sqlalchemy.exc import NoResultFound

from config.monitoring import ImporterMonitoring
from crm_app.importer.pipeline import (
    HEARTBEAT_TASK_NAME,
    ImportJobService,
    InvalidImportOptionsError,
    ProgressSnapshot,
    analyze_csv,
    serialize_job,
)
from crm_app.importer.state import get_progress_publisher
from crm_app.importer.utils import allowed_file, cleanup_upload, display_filename, persist_upload
from crm_app.models import db
from crm_app.models.importer.schema import ImportJobStateError

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _observe(endpoint: str, start_time: float, status: str) -> None:
    ImporterMonitoring.observe(endpoint, duration_seconds=time.perf_counter() - start_time, status=status)


def _form_json(name: str) -> dict | None:
    raw = request.form.get(name)
    if raw in (None, ""):
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Field '{name}' is not valid JSON: {exc.msg}.") from exc
    if not isinstance(value, dict):
        raise ValueError(f"Field '{name}' must be a JSON object.")
    return value


def _uploaded_csv():
    file_storage = request.files.get("file")
    if file_storage is None or not file_storage.filename:
        raise ValueError("A CSV file upload is required in the 'file' field.")
    if not allowed_file(file_storage.filename):
        raise ValueError("Only .csv, .tsv and .txt uploads are accepted.")
    return file_storage


@importer_blueprint.get("/health")
def importer_healthcheck():
    """Lightweight health endpoint proving the importer blueprint mounted correctly."""
    importer_state = current_app.extensions.get("importer", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "execution_mode": importer_state.get("execution_mode"),
                "worker_enabled": importer_state.get("worker_enabled", False),
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """Validate importer worker availability via the heartbeat task."""
    importer_state = current_app.extensions.get("importer", {})
    timeout_seconds = float(request.args.get("timeout", 5))
    payload = {
        "worker_enabled": importer_state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not payload["worker_enabled"]:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set IMPORTER_WORKER_ENABLED=true."
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get(HEARTBEAT_TASK_NAME) if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), HTTPStatus.INTERNAL_SERVER_ERROR

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), HTTPStatus.GATEWAY_TIMEOUT
    payload["status"] = "ok"
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.post("/analyze")
def importer_analyze():
    start_time = time.perf_counter()
    try:
        file_storage = _uploaded_csv()
        options = _form_json("options") or {}
    except ValueError as exc:
        _observe("analyze", start_time, "invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    analysis = analyze_csv(
        file_storage.stream,
        delimiter=options.get("delimiter"),
        has_header=bool(options.get("has_header", True)),
        encoding=options.get("encoding") or "utf-8",
    )
    _observe("analyze", start_time, "success")
    payload = analysis.as_dict()
    payload["filename"] = display_filename(file_storage)
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.post("/jobs")
def importer_create_job():
    """
    Accept a multipart upload and start an import job.

    Form fields: ``file`` (the CSV), ``mapping`` (JSON object of column name to
    contact field; headers are auto-mapped when omitted) and ``options`` (JSON
    object of per-job option overrides).
    """
    start_time = time.perf_counter()
    try:
        file_storage = _uploaded_csv()
        field_mapping = _form_json("mapping")
        overrides = _form_json("options")
    except ValueError as exc:
        _observe("job_create", start_time, "invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    app = current_app._get_current_object()
    stored_path = persist_upload(file_storage, app)
    service = ImportJobService(app=app)
    try:
        job = service.create_job(display_filename(file_storage), field_mapping=field_mapping, overrides=overrides)
    except InvalidImportOptionsError as exc:
        cleanup_upload(stored_path)
        _observe("job_create", start_time, "invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    try:
        dispatch = service.start(job, stored_path, keep_file=False)
    except Exception as exc:
        current_app.logger.exception("Importer job dispatch failed.", extra={"importer_job_id": job.id})
        _observe("job_create", start_time, "error")
        return _json_error(f"Import job {job.id} could not be started: {exc}", HTTPStatus.SERVICE_UNAVAILABLE)

    _observe("job_create", start_time, "success")
    db.session.refresh(job)
    payload = serialize_job(job, include_errors=False)
    payload["dispatch"] = dispatch
    return jsonify(payload), HTTPStatus.ACCEPTED


@importer_blueprint.get("/jobs/<int:job_id>")
def importer_job_detail(job_id: int):
    start_time = time.perf_counter()
    try:
        job = ImportJobService().get_job(job_id)
    except NoResultFound:
        _observe("job_detail", start_time, "not_found")
        return _json_error(f"Import job {job_id} not found.", HTTPStatus.NOT_FOUND)

    _observe("job_detail", start_time, "success")
    return jsonify(serialize_job(job)), HTTPStatus.OK


@importer_blueprint.post("/jobs/<int:job_id>/cancel")
def importer_cancel_job(job_id: int):
    try:
        job = ImportJobService().request_cancel(job_id)
    except NoResultFound:
        return _json_error(f"Import job {job_id} not found.", HTTPStatus.NOT_FOUND)
    except ImportJobStateError as exc:
        return _json_error(str(exc), HTTPStatus.CONFLICT)
    return jsonify(serialize_job(job, include_errors=False)), HTTPStatus.ACCEPTED


def _sse(snapshot: ProgressSnapshot) -> str:
    return f"event: progress\ndata: {json.dumps(snapshot.as_dict())}\n\n"


@importer_blueprint.get("/jobs/<int:job_id>/events")
def importer_job_events(job_id: int):
    """
    Stream progress snapshots for a job as Server-Sent Events.

    The persisted state is sent first. Jobs running in this process push
    snapshots through the progress publisher; for jobs running elsewhere the
    stream re-reads the job on every idle heartbeat. The stream ends after the
    terminal snapshot.
    """
    service = ImportJobService()
    try:
        job = service.get_job(job_id)
    except NoResultFound:
        ImporterMonitoring.record_event_stream(status="not_found")
        return _json_error(f"Import job {job_id} not found.", HTTPStatus.NOT_FOUND)

    subscription = get_progress_publisher(current_app).subscribe(job_id)
    db.session.refresh(job)
    initial = ProgressSnapshot.from_job(job)
    heartbeat = float(current_app.config.get("IMPORTER_PROGRESS_HEARTBEAT_SECONDS", 15.0))
    ImporterMonitoring.record_event_stream(status="opened")

    def generate():
        with subscription:
            last = initial
            yield _sse(initial)
            if initial.is_terminal:
                return
            for snapshot in subscription.listen(heartbeat_seconds=heartbeat):
                if snapshot is None:
                    db.session.refresh(job)
                    snapshot = ProgressSnapshot.from_job(job)
                    if snapshot == last:
                        yield ": keep-alive\n\n"
                        continue
                last = snapshot
                yield _sse(snapshot)
                if snapshot.is_terminal:
                    return

    response = Response(stream_with_context(generate()), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response
