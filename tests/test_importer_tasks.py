import pytest

import crm_app.importer.tasks as tasks_module
from crm_app.importer.tasks import importer_healthcheck, ingest_contacts_csv
from crm_app.models import Contact, ImportJob, db
from crm_app.models.importer.schema import ImportJobStatus


def test_healthcheck_task_reports_ok():
    payload = importer_healthcheck()

    assert payload["status"] == "ok"
    assert payload["timestamp"]


def test_ingest_task_runs_the_job(job_service, tmp_path):
    path = tmp_path / "contacts.csv"
    path.write_text("email,name\nA@X.com,Jane Doe\na@x.com,Jane D.\n", encoding="utf-8")
    job_id = job_service.create_job("contacts.csv").id

    result = ingest_contacts_csv(job_id=job_id, file_path=str(path), keep_file=False)

    assert result["job_id"] == job_id
    assert result["status"] == "completed"
    assert result["successful_rows"] == 1
    assert result["duplicate_rows"] == 1
    assert not path.exists()
    assert Contact.query.count() == 1


def test_ingest_task_marks_crashed_jobs_failed(job_service, tmp_path, monkeypatch):
    job_id = job_service.create_job("contacts.csv").id

    def _crash(self, job_id, file_path, **kwargs):
        raise RuntimeError("worker exploded")

    monkeypatch.setattr(tasks_module.ImportJobService, "execute", _crash)

    with pytest.raises(RuntimeError):
        ingest_contacts_csv(job_id=job_id, file_path=str(tmp_path / "contacts.csv"))

    job = db.session.get(ImportJob, job_id)
    assert job.status == ImportJobStatus.FAILED
    assert job.failure_reason == "unexpected: worker exploded"
