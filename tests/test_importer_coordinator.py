import io
import threading
import time

import pytest
from sqlalchemy.exc import OperationalError

from crm_app.importer.pipeline import ImportJobCoordinator, ProgressPublisher
from crm_app.importer.pipeline.batch_writer import ContactBatchWriter
from crm_app.importer.pipeline.coordinator import SHUTDOWN_JOIN_SECONDS
from crm_app.models import Contact, ContactActivity, db
from crm_app.models.importer.schema import ImportJobStateError, ImportJobStatus

DUPLICATE_ROWS = "email,name\nA@X.com,Jane Doe\na@x.com,Jane D.\n,Bob Lee\n,Bob Lee\n"

MIXED_ROWS = "\n".join(
    [
        "name,email,company,phone",
        "Ada Lovelace,ada@example.com,Analytical,+1 555 010 0001",
        "Ada Lovelace,ADA@example.com,Analytical,",
        "Grace Hopper,grace@example.com,Navy,",
        ",nobody@example.com,Nowhere,",
        "Grace Hopper,,Navy,",
        "Alan Turing,not-an-email,Bletchley,",
        "Alan Turing,alan@example.com,Bletchley,",
        "Linus,linus@example.com,,12",
    ]
) + "\n"


def _write(tmp_path, text, name="contacts.csv"):
    path = tmp_path / name
    path.write_bytes(text.encode("utf-8") if isinstance(text, str) else text)
    return path


def _run(job_service, tmp_path, text, *, mapping=None, listener=None, **overrides):
    job = job_service.create_job("contacts.csv", field_mapping=mapping, overrides=overrides)
    summary = job_service.execute(job.id, _write(tmp_path, text), batch_listener=listener)
    db.session.refresh(job)
    return job, summary


def _clear_contacts():
    ContactActivity.query.delete()
    Contact.query.delete()
    db.session.commit()


def test_duplicates_within_a_file_are_counted_not_written(job_service, tmp_path):
    job, summary = _run(job_service, tmp_path, DUPLICATE_ROWS, batch_size=2)

    assert summary.status == "completed"
    assert (summary.successful_rows, summary.duplicate_rows, summary.error_rows) == (2, 2, 0)
    assert job.status == ImportJobStatus.COMPLETED
    assert job.total_rows == 4
    assert job.processed_rows == 4
    assert job.successful_rows == 2
    assert job.duplicate_rows == 2
    assert job.error_rows == 0
    assert job.field_mapping == {"email": "email", "name": "full_name"}
    assert job.started_at is not None
    assert job.completed_at is not None
    names = sorted(contact.full_name for contact in Contact.query.all())
    assert names == ["Bob Lee", "Jane Doe"]
    assert Contact.query.filter_by(email="a@x.com").one().import_job_id == job.id


def test_mixed_rows_are_classified_and_errors_retained(job_service, tmp_path):
    job, summary = _run(job_service, tmp_path, MIXED_ROWS, batch_size=3)

    assert summary.status == "completed"
    assert summary.processed_rows == 8
    assert (summary.successful_rows, summary.error_rows, summary.duplicate_rows) == (4, 2, 2)
    errors = job.errors
    assert [detail["row"] for detail in errors["details"]] == [4, 6]
    assert errors["details"][0]["fields"] == ["full_name"]
    assert errors["details"][1]["fields"] == ["email"]
    assert errors["details"][1]["preview"] == "Alan Turing,not-an-email,Bletchley,"
    assert errors["warning_count"] == 1
    assert errors["warnings"][0]["row"] == 8
    assert errors["warnings"][0]["fields"] == ["mobile_phone"]
    assert not errors["truncated"]
    assert Contact.query.filter_by(email="linus@example.com").one().mobile_phone is None


@pytest.mark.parametrize("batch_size, workers", [(1, 1), (3, 1), (500, 1), (2, 3)])
def test_classification_does_not_depend_on_batching(job_service, tmp_path, batch_size, workers):
    job, summary = _run(job_service, tmp_path, MIXED_ROWS, batch_size=batch_size, normalizer_workers=workers)

    assert (summary.successful_rows, summary.error_rows, summary.duplicate_rows) == (4, 2, 2)
    emails = sorted(contact.email or "" for contact in Contact.query.all())
    assert emails == ["ada@example.com", "alan@example.com", "grace@example.com", "linus@example.com"]
    assert [detail["row"] for detail in job.errors["details"]] == [4, 6]


def test_repeated_runs_with_different_batch_sizes_agree(job_service, tmp_path):
    results = []
    for batch_size in (1, 2, 7, 100):
        _, summary = _run(job_service, tmp_path, MIXED_ROWS, batch_size=batch_size)
        persisted = sorted((contact.full_name, contact.email) for contact in Contact.query.all())
        results.append((summary.successful_rows, summary.error_rows, summary.duplicate_rows, persisted))
        _clear_contacts()

    assert all(result == results[0] for result in results)


def test_second_import_of_the_same_file_only_finds_duplicates(job_service, tmp_path):
    _run(job_service, tmp_path, DUPLICATE_ROWS)

    job, summary = _run(job_service, tmp_path, DUPLICATE_ROWS)

    assert summary.status == "completed"
    assert summary.successful_rows == 0
    assert summary.duplicate_rows == 4
    assert Contact.query.count() == 2


def test_cancel_between_batches_keeps_committed_batches(job_service, tmp_path):
    rows = ["name,email"] + [f"Person {index},p{index}@example.com" for index in range(1, 9)]

    def cancel_after_second_batch(outcome, snapshot):
        if outcome.batch_number == 2:
            job_service.request_cancel(snapshot.job_id)

    job, summary = _run(
        job_service,
        tmp_path,
        "\n".join(rows) + "\n",
        listener=cancel_after_second_batch,
        batch_size=2,
    )

    assert summary.status == "failed"
    assert job.status == ImportJobStatus.FAILED
    assert job.failure_reason.startswith("cancelled:")
    assert job.cancel_requested_at is not None
    assert job.successful_rows == 4
    assert job.processed_rows == 4
    assert Contact.query.count() == 4


def test_cancel_requested_before_start_fails_without_reading(job_service, tmp_path):
    job = job_service.create_job("contacts.csv")
    job_service.request_cancel(job.id)

    summary = job_service.execute(job.id, _write(tmp_path, DUPLICATE_ROWS))
    db.session.refresh(job)

    assert summary.status == "failed"
    assert job.failure_reason == "cancelled: Import cancelled before it started."
    assert job.started_at is None
    assert Contact.query.count() == 0


def test_duplicate_header_columns_are_independently_mappable(job_service, tmp_path):
    text = "Name,Email,Email\nAda,first@example.com,second@example.com\n"

    job, summary = _run(job_service, tmp_path, text, mapping={"Name": "full_name", "Email__1": "email"})

    assert summary.successful_rows == 1
    assert Contact.query.one().email == "second@example.com"


def test_mapping_without_a_name_attribute_fails_the_job(job_service, tmp_path):
    job, summary = _run(job_service, tmp_path, DUPLICATE_ROWS, mapping={"email": "email"})

    assert summary.status == "failed"
    assert job.status == ImportJobStatus.FAILED
    assert job.failure_reason.startswith("invalid_field_mapping:")
    assert job.started_at is None
    assert Contact.query.count() == 0


def test_auto_mapping_without_a_name_column_fails_the_job(job_service, tmp_path):
    job, summary = _run(job_service, tmp_path, "email,company\nada@example.com,Analytical\n")

    assert summary.status == "failed"
    assert job.failure_reason.startswith("invalid_field_mapping:")


def test_mapped_columns_missing_from_header_are_reported(job_service, tmp_path):
    job, summary = _run(
        job_service,
        tmp_path,
        "name\nAda\n",
        mapping={"name": "full_name", "Phone Number": "mobile_phone"},
    )

    assert summary.status == "completed"
    assert summary.successful_rows == 1
    assert "Phone Number" in job.errors["mapping_warnings"][0]


def test_empty_file_completes_with_no_rows(job_service, tmp_path):
    job, summary = _run(job_service, tmp_path, "")

    assert summary.status == "completed"
    assert job.total_rows == 0
    assert job.processed_rows == 0


def test_header_only_file_completes_with_no_rows(job_service, tmp_path):
    job, summary = _run(job_service, tmp_path, "name,email\n\n\n")

    assert summary.status == "completed"
    assert job.total_rows == 0
    assert summary.batches_written == 0


def test_unreadable_header_fails_the_job(job_service, tmp_path):
    job, summary = _run(job_service, tmp_path, '"name,email\n')

    assert summary.status == "failed"
    assert job.failure_reason.startswith("source_unreadable:")


def test_missing_upload_fails_the_job(job_service, tmp_path):
    job = job_service.create_job("gone.csv")

    summary = job_service.execute(job.id, tmp_path / "gone.csv")
    db.session.refresh(job)

    assert summary.status == "failed"
    assert job.failure_reason.startswith("source_unreadable:")


def test_consecutive_batch_failures_abort_the_job(job_service, tmp_path, monkeypatch):
    def _unavailable(self, items):
        raise OperationalError("INSERT INTO contacts", {}, Exception("disk I/O error"))

    monkeypatch.setattr(ContactBatchWriter, "_persist", _unavailable)
    rows = ["name"] + [f"Person {index}" for index in range(5)]

    job, summary = _run(
        job_service,
        tmp_path,
        "\n".join(rows) + "\n",
        batch_size=1,
        max_consecutive_batch_failures=2,
    )

    assert summary.status == "failed"
    assert job.failure_reason.startswith("destination_unavailable:")
    assert job.error_rows == 2
    assert job.processed_rows == 2
    assert job.successful_rows == 0


def test_progress_is_published_and_ends_with_terminal_snapshot(job_service, tmp_path):
    job = job_service.create_job("contacts.csv", overrides={"batch_size": 2})
    options = job_service.options_for(job)
    publisher = ProgressPublisher(throttle_ms=0, queue_size=100)
    subscription = publisher.subscribe(job.id)

    coordinator = ImportJobCoordinator(job, options=options, session=db.session, publisher=publisher)
    with _write(tmp_path, DUPLICATE_ROWS).open("rb") as handle:
        coordinator.run(handle)

    snapshots = list(subscription.listen(heartbeat_seconds=0.01))
    processed = [snapshot.processed_rows for snapshot in snapshots]
    assert processed == sorted(processed)
    assert snapshots[-1].status == "completed"
    assert snapshots[-1].processed_rows == 4
    for snapshot in snapshots:
        assert snapshot.processed_rows == snapshot.successful_rows + snapshot.error_rows + snapshot.duplicate_rows


def test_coordinator_runs_from_a_byte_stream(job_service):
    job = job_service.create_job("stream.csv")
    coordinator = ImportJobCoordinator(job, options=job_service.options_for(job), session=db.session)

    summary = coordinator.run(io.BytesIO(DUPLICATE_ROWS.encode("utf-8")))

    assert summary.succeeded
    assert summary.as_dict()["successful_rows"] == 2


def test_only_pending_jobs_can_run(job_service, tmp_path):
    job, _ = _run(job_service, tmp_path, DUPLICATE_ROWS)
    coordinator = ImportJobCoordinator(job, options=job_service.options_for(job), session=db.session)

    with pytest.raises(ImportJobStateError):
        coordinator.run(io.BytesIO(DUPLICATE_ROWS.encode("utf-8")))


class _SlowLineSource(io.RawIOBase):
    """Raw stream producing one CSV line every ``delay`` seconds, indefinitely."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self._delay = delay
        self._index = 0
        self._pending = b"name,email\n"

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        time.sleep(self._delay)
        line, self._pending = self._pending, b""
        if not line:
            self._index += 1
            line = f"Person {self._index},p{self._index}@example.com\n".encode("utf-8")
        buffer[: len(line)] = line
        return len(line)


def test_reimport_detects_names_with_non_ascii_capitals(job_service, tmp_path):
    text = "name,company\nÉMILE ZOLA,ÉDITIONS\n"
    _, first = _run(job_service, tmp_path, text)

    job, second = _run(job_service, tmp_path, text)

    assert first.successful_rows == 1
    assert second.status == "completed"
    assert second.successful_rows == 0
    assert second.duplicate_rows == 1
    assert Contact.query.count() == 1


def test_rows_matching_stored_contacts_are_recorded_as_store_duplicates(job_service, tmp_path):
    _run(job_service, tmp_path, DUPLICATE_ROWS)
    job = job_service.create_job("again.csv")
    coordinator = ImportJobCoordinator(job, options=job_service.options_for(job), session=db.session)

    summary = coordinator.run(io.BytesIO(DUPLICATE_ROWS.encode("utf-8")))

    assert summary.duplicate_rows == 4
    # Rows 2 and 4 repeat earlier rows of the same file; rows 1 and 3 match stored contacts.
    assert coordinator.store_duplicates == 2


def test_error_details_are_capped_but_counts_stay_exact(job_service, tmp_path):
    rows = ["name,email"] + [f"Person {index},not-an-email-{index}" for index in range(7)] + ["Ada,ada@example.com"]

    job, summary = _run(job_service, tmp_path, "\n".join(rows) + "\n", max_retained_errors=3)

    assert summary.status == "completed"
    assert summary.error_rows == 7
    assert summary.successful_rows == 1
    assert job.error_rows == 7
    errors = job.errors
    assert len(errors["details"]) == 3
    assert [detail["row"] for detail in errors["details"]] == [1, 2, 3]
    assert errors["error_count"] == 7
    assert errors["truncated"] is True


def test_cancel_stops_a_slow_stream_without_waiting_out_shutdown(job_service):
    job = job_service.create_job("stream.csv", overrides={"batch_size": 2, "delimiter": ","})
    coordinator = ImportJobCoordinator(job, options=job_service.options_for(job), session=db.session)
    handle = io.BufferedReader(_SlowLineSource(delay=0.01))
    timer = threading.Timer(0.3, coordinator.cancel)

    timer.start()
    try:
        started = time.monotonic()
        summary = coordinator.run(handle)
        elapsed = time.monotonic() - started
    finally:
        timer.cancel()
    coordinator.close_source(handle)

    assert summary.status == "failed"
    assert summary.failure_reason.startswith("cancelled:")
    assert summary.successful_rows > 0
    assert elapsed < SHUTDOWN_JOIN_SECONDS
    assert coordinator.stages_alive == []
    assert handle.closed


def test_source_is_closed_only_after_the_decoder_lets_go(job_service):
    job = job_service.create_job("stream.csv")
    coordinator = ImportJobCoordinator(job, options=job_service.options_for(job), session=db.session)
    handle = io.BytesIO(DUPLICATE_ROWS.encode("utf-8"))
    coordinator._source_in_use = True

    coordinator.close_source(handle)
    assert not handle.closed

    coordinator._release_source()
    assert handle.closed
