import pytest
from sqlalchemy.exc import IntegrityError

from crm_app.models import Contact, ImportJob, ImportJobStatus, db
from crm_app.models.importer.schema import ImportJobStateError


def _job(**kwargs):
    job = ImportJob(filename="contacts.csv", **kwargs)
    db.session.add(job)
    db.session.commit()
    return job


def test_new_job_defaults():
    job = _job()

    assert job.status == ImportJobStatus.PENDING
    assert job.processed_rows == 0
    assert job.total_rows is None
    assert not job.is_terminal
    assert job.created_at is not None


def test_job_lifecycle_stamps_timestamps():
    job = _job()

    job.transition_to(ImportJobStatus.PROCESSING)
    assert job.started_at is not None
    job.transition_to(ImportJobStatus.COMPLETED)
    db.session.commit()

    assert job.completed_at is not None
    assert job.is_terminal
    assert job.failure_reason is None


def test_pending_job_can_fail_directly_with_reason():
    job = _job()

    job.transition_to(ImportJobStatus.FAILED, reason="source_unreadable: missing")

    assert job.status == ImportJobStatus.FAILED
    assert job.failure_reason == "source_unreadable: missing"
    assert job.started_at is None


@pytest.mark.parametrize(
    "path",
    [
        (ImportJobStatus.COMPLETED,),
        (ImportJobStatus.PROCESSING, ImportJobStatus.PENDING),
        (ImportJobStatus.PROCESSING, ImportJobStatus.FAILED, ImportJobStatus.COMPLETED),
    ],
)
def test_illegal_transitions_raise(path):
    job = _job()

    with pytest.raises(ImportJobStateError):
        for status in path:
            job.transition_to(status)


def test_apply_counts_requires_consistent_accounting():
    job = _job()
    job.transition_to(ImportJobStatus.PROCESSING)

    job.apply_counts(processed=5, successful=3, errors=1, duplicates=1, total=None)
    assert job.processed_rows == 5

    with pytest.raises(ValueError):
        job.apply_counts(processed=6, successful=3, errors=1, duplicates=1)
    with pytest.raises(ValueError):
        job.apply_counts(processed=4, successful=2, errors=1, duplicates=1)


def test_counts_are_frozen_once_terminal():
    job = _job()
    job.transition_to(ImportJobStatus.PROCESSING)
    job.transition_to(ImportJobStatus.FAILED, reason="cancelled: stop")

    with pytest.raises(ImportJobStateError):
        job.apply_counts(processed=1, successful=1, errors=0, duplicates=0)


def test_request_cancel_is_idempotent():
    job = _job()

    job.request_cancel()
    first = job.cancel_requested_at
    job.request_cancel()

    assert first is not None
    assert job.cancel_requested_at == first


def test_database_enforces_row_accounting():
    db.session.add(ImportJob(filename="bad.csv", processed_rows=3, successful_rows=1))

    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_live_contact_emails_are_unique_but_deleted_ones_are_not():
    db.session.add(Contact(full_name="Old", email="same@example.com", is_deleted=True))
    db.session.add(Contact(full_name="Current", email="same@example.com"))
    db.session.commit()

    assert Contact.find_active_by_email("SAME@example.com").full_name == "Current"

    db.session.add(Contact(full_name="Clash", email="same@example.com"))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()
