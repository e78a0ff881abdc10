import pytest
from sqlalchemy.exc import NoResultFound

import crm_app.importer.celery_app as celery_module
from crm_app.importer.pipeline import INGEST_TASK_NAME, InvalidImportOptionsError, serialize_job
from crm_app.importer.state import get_cancellation_registry
from crm_app.models import Contact, ImportJob, db
from crm_app.models.importer.schema import ImportJobStateError, ImportJobStatus


class _QueuedResult:
    id = "task-123"


class _FakeCelery:
    def __init__(self, error=None):
        self.error = error
        self.sent = []

    def send_task(self, name, kwargs=None):
        if self.error is not None:
            raise self.error
        self.sent.append((name, kwargs))
        return _QueuedResult()


def _csv(tmp_path, text="name,email\nAda,ada@example.com\n"):
    path = tmp_path / "contacts.csv"
    path.write_text(text, encoding="utf-8")
    return path


def test_create_job_persists_effective_options(job_service):
    job = job_service.create_job(
        "contacts.csv",
        field_mapping={"Name": "full_name"},
        overrides={"batch_size": 25, "delimiter": ";", "encoding": None},
    )

    assert job.id is not None
    assert job.status == ImportJobStatus.PENDING
    assert job.field_mapping == {"Name": "full_name"}
    assert job.options_json["batch_size"] == 25
    assert job.options_json["delimiter"] == ";"
    assert job.options_json["encoding"] == "utf-8"
    assert job.processed_rows == 0


def test_create_job_stores_auto_delimiter_when_not_given(job_service):
    job = job_service.create_job("contacts.csv")

    assert job.options_json["delimiter"] == "auto"
    assert job_service.options_for(job).delimiter is None


@pytest.mark.parametrize(
    "overrides",
    [{"batch_size": 0}, {"delimiter": ";;"}, {"encoding": "klingon"}, {"colour": "blue"}, {"queue_size": "many"}],
)
def test_create_job_rejects_invalid_options(job_service, overrides):
    with pytest.raises(InvalidImportOptionsError):
        job_service.create_job("contacts.csv", overrides=overrides)

    assert ImportJob.query.count() == 0


def test_get_job_raises_for_unknown_id(job_service):
    with pytest.raises(NoResultFound):
        job_service.get_job(404)


def test_stored_options_with_unknown_keys_fail_the_job(job_service, tmp_path):
    job = job_service.create_job("contacts.csv")
    job.options_json = {**job.options_json, "legacy_flag": True}
    db.session.commit()

    summary = job_service.execute(job.id, _csv(tmp_path))
    db.session.refresh(job)

    assert summary.status == "failed"
    assert job.failure_reason.startswith("invalid_options:")


def test_start_inline_runs_the_job_and_removes_the_upload(job_service, tmp_path):
    path = _csv(tmp_path)
    job = job_service.create_job("contacts.csv")

    payload = job_service.start(job, path, mode="inline")

    assert payload["mode"] == "inline"
    assert payload["summary"]["status"] == "completed"
    assert payload["summary"]["successful_rows"] == 1
    assert not path.exists()
    assert Contact.query.count() == 1
    assert job.id not in get_cancellation_registry(job_service.app)


def test_start_celery_queues_the_task(job_service, tmp_path, monkeypatch):
    fake = _FakeCelery()
    monkeypatch.setattr(celery_module, "get_celery_app", lambda app: fake)
    path = _csv(tmp_path)
    job = job_service.create_job("contacts.csv")

    payload = job_service.start(job, path, mode="celery")

    assert payload == {"job_id": job.id, "mode": "celery", "task_id": "task-123"}
    assert fake.sent == [(INGEST_TASK_NAME, {"job_id": job.id, "file_path": str(path), "keep_file": False})]
    assert job.status == ImportJobStatus.PENDING


def test_start_celery_failure_fails_the_job(job_service, tmp_path, monkeypatch):
    monkeypatch.setattr(celery_module, "get_celery_app", lambda app: _FakeCelery(error=ConnectionError("broker down")))
    job = job_service.create_job("contacts.csv")

    with pytest.raises(ConnectionError):
        job_service.start(job, _csv(tmp_path), mode="celery")

    db.session.refresh(job)
    assert job.status == ImportJobStatus.FAILED
    assert job.failure_reason == "destination_unavailable: Unable to queue import job: broker down"


def test_request_cancel_marks_pending_job(job_service):
    job = job_service.create_job("contacts.csv")

    cancelled = job_service.request_cancel(job.id)

    assert cancelled.cancel_requested_at is not None
    assert cancelled.status == ImportJobStatus.PENDING
    assert serialize_job(cancelled)["cancel_requested"] is True


def test_request_cancel_signals_a_running_job(app, job_service):
    job = job_service.create_job("contacts.csv")
    event = get_cancellation_registry(app).register(job.id)
    try:
        job_service.request_cancel(job.id)
        assert event.is_set()
    finally:
        get_cancellation_registry(app).release(job.id)


def test_request_cancel_rejects_finished_jobs(job_service, tmp_path):
    job = job_service.create_job("contacts.csv")
    job_service.execute(job.id, _csv(tmp_path))

    with pytest.raises(ImportJobStateError):
        job_service.request_cancel(job.id)


def test_serialize_job_shape(job_service, tmp_path):
    job = job_service.create_job("contacts.csv")
    job_service.execute(job.id, _csv(tmp_path))
    db.session.refresh(job)

    payload = serialize_job(job)
    compact = serialize_job(job, include_errors=False)

    assert payload["status"] == "completed"
    assert payload["filename"] == "contacts.csv"
    assert payload["total_rows"] == 1
    assert payload["successful_rows"] == 1
    assert payload["field_mapping"] == {"name": "full_name", "email": "email"}
    assert payload["errors"]["details"] == []
    assert payload["completed_at"] is not None
    assert "errors" not in compact
