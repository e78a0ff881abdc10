"""
Job coordinator for bulk contact imports.

The coordinator runs one ``ImportJob`` as a pipeline of stages connected by
bounded queues::

    decoder thread -> normalizer thread -> resolver thread -> writer (caller)

A full queue blocks the stage feeding it, so memory stays bounded by the
queue sizes no matter how large the file is. The resolver is a single thread
because duplicate classification must see rows in file order; normalizing may
fan out to a worker pool, and results are put back in order before they
reach the resolver. The writer loop runs in the calling thread and is the
only code touching the database session: it writes batches, folds counts,
persists job snapshots, and publishes progress.
"""

from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_app.importer import metrics
from crm_app.importer.adapters.csv_contacts import (
    CSVAdapterError,
    ContactCSVDecoder,
    DecodedRow,
    DecoderStatistics,
)
from crm_app.importer.contracts import suggest_field_mapping
from crm_app.models import db
from crm_app.models.importer.schema import ImportJob, ImportJobStateError, ImportJobStatus
from crm_app.utils.logging_config import get_importer_logger

from .batch_writer import BatchOutcome, ContactBatchWriter, PendingContact
from .dedupe import ContactStoreLookup, DuplicateDecision, DuplicateLookup, DuplicateResolver
from .errors import (
    DestinationUnavailableError,
    ImportCancelledError,
    ImportFatalError,
    InvalidFieldMappingError,
    RowErrorLog,
    SourceUnreadableError,
)
from .normalize import NormalizationResult, RowNormalizer, prepare_field_mapping
from .options import ImportOptions
from .progress import ProgressPublisher, ProgressSnapshot

POLL_INTERVAL_SECONDS = 0.1
SHUTDOWN_JOIN_SECONDS = 5.0
NORMALIZER_CHUNK_PER_WORKER = 32

BatchListener = Callable[[BatchOutcome, ProgressSnapshot], None]


# Stage messages -------------------------------------------------------------


@dataclass(frozen=True)
class _Header:
    header: tuple[str, ...] | None
    delimiter: str
    mapping: Mapping[str, str] | None = None
    warnings: tuple[str, ...] = ()
    auto_mapped: bool = False


@dataclass(frozen=True)
class _Row:
    row: DecodedRow


@dataclass(frozen=True)
class _Normalized:
    result: NormalizationResult
    preview: str


@dataclass(frozen=True)
class _Classified:
    result: NormalizationResult
    decision: DuplicateDecision | None
    preview: str


@dataclass(frozen=True)
class _End:
    statistics: DecoderStatistics
    cancelled: bool = False


@dataclass(frozen=True)
class _Fatal:
    error: BaseException


_HALT = object()


class _Channel:
    """Bounded hand-off between two stages that gives up once the pipeline halts."""

    def __init__(self, maxsize: int, halt: threading.Event) -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._halt = halt

    def send(self, message: Any) -> bool:
        while not self._halt.is_set():
            try:
                self._queue.put(message, timeout=POLL_INTERVAL_SECONDS)
                return True
            except queue.Full:
                continue
        return False

    def receive(self) -> Any:
        while not self._halt.is_set():
            try:
                return self._queue.get(timeout=POLL_INTERVAL_SECONDS)
            except queue.Empty:
                continue
        return _HALT


# Accounting -----------------------------------------------------------------


@dataclass
class _Counts:
    successful: int = 0
    errors: int = 0
    duplicates: int = 0
    unfolded_errors: int = 0
    unfolded_duplicates: int = 0

    @property
    def processed(self) -> int:
        return self.successful + self.errors + self.duplicates

    @property
    def unfolded(self) -> int:
        return self.unfolded_errors + self.unfolded_duplicates

    def fold(self) -> tuple[int, int]:
        errors, duplicates = self.unfolded_errors, self.unfolded_duplicates
        self.errors += errors
        self.duplicates += duplicates
        self.unfolded_errors = self.unfolded_duplicates = 0
        return errors, duplicates


@dataclass
class ImportSummary:
    """Outcome of one coordinator run."""

    job_id: int
    status: str
    total_rows: int | None
    processed_rows: int
    successful_rows: int
    error_rows: int
    duplicate_rows: int
    batches_written: int
    failure_reason: str | None = None
    duration_seconds: float = 0.0
    errors: dict = field(default_factory=dict, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.status == ImportJobStatus.COMPLETED.value

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "total_rows": self.total_rows,
            "processed_rows": self.processed_rows,
            "successful_rows": self.successful_rows,
            "error_rows": self.error_rows,
            "duplicate_rows": self.duplicate_rows,
            "batches_written": self.batches_written,
            "failure_reason": self.failure_reason,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class ImportJobCoordinator:
    """Drive one import job from source bytes to a terminal status."""

    def __init__(
        self,
        job: ImportJob,
        *,
        options: ImportOptions,
        field_mapping: Mapping[str, str] | None = None,
        session: Session | None = None,
        publisher: ProgressPublisher | None = None,
        cancel_event: threading.Event | None = None,
        batch_listener: BatchListener | None = None,
        store_lookup: DuplicateLookup | None = None,
    ) -> None:
        self.job = job
        self.job_id = job.id
        self.options = options
        self.field_mapping = dict(field_mapping) if field_mapping is not None else None
        self.session = session or db.session
        self.publisher = publisher
        self.cancel_event = cancel_event or threading.Event()
        self.batch_listener = batch_listener
        if store_lookup is None and options.cross_job_dedupe:
            store_lookup = ContactStoreLookup(self.session, job_id=job.id)
        self.store_lookup = store_lookup

        self.writer = ContactBatchWriter(
            self.session,
            job_id=job.id,
            batch_size=options.batch_size,
            auto_enrich=options.auto_enrich,
        )
        self.error_log = RowErrorLog(options.max_retained_errors)
        self.counts = _Counts()
        self.total_rows: int | None = None
        self.mapping_warnings: tuple[str, ...] = ()
        self.failure_reason: str | None = None
        self.store_duplicates = 0

        self._halt = threading.Event()
        self._source_lock = threading.Lock()
        self._source_in_use = False
        self._close_on_release: list[IO[bytes]] = []
        self._cancel_persisted = False
        self._consecutive_failures = 0
        self._last_persisted = 0.0
        self._started = 0.0
        self._processing = False
        self._threads: list[threading.Thread] = []
        self._logger = get_importer_logger()

    # Public API ---------------------------------------------------------------

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def stages_alive(self) -> list[str]:
        """Names of pipeline threads still running."""

        return [thread.name for thread in self._threads if thread.is_alive()]

    def close_source(self, source: IO[bytes]) -> None:
        """
        Close ``source`` now, or as soon as the decoder stops reading it.

        A decoder blocked on a stalled stream can outlive ``run()``; closing
        the stream underneath it is left to the decoder thread itself.
        """

        with self._source_lock:
            if self._source_in_use:
                self._close_on_release.append(source)
                return
        source.close()

    def _release_source(self) -> None:
        with self._source_lock:
            self._source_in_use = False
            pending, self._close_on_release = self._close_on_release, []
        for source in pending:
            source.close()

    def abort(self, exc: ImportFatalError) -> ImportSummary:
        """Fail a job that cannot start (missing upload, bad options) without reading anything."""

        self._started = time.monotonic()
        self._fail(exc)
        return self._summary()

    def run(self, source: IO[bytes]) -> ImportSummary:
        """
        Import every row of ``source`` into the contact store.

        Fatal conditions (unreadable source, invalid mapping, outage,
        cancellation) leave the job ``failed`` and are reported through the
        returned summary. Unexpected exceptions fail the job and propagate.
        """

        if self.job.status != ImportJobStatus.PENDING:
            raise ImportJobStateError(f"Import job {self.job_id} is {self.job.status.value}; only pending jobs run.")

        self._started = time.monotonic()
        try:
            if self.job.cancel_requested_at is not None:
                raise ImportCancelledError("Import cancelled before it started.")
            if self.field_mapping is not None:
                prepare_field_mapping(self.field_mapping)
            self._run_pipeline(source)
        except ImportFatalError as exc:
            self._fail(exc)
        except Exception as exc:
            self._fail(exc)
            raise
        finally:
            self._shutdown()
        return self._summary()

    # Pipeline -----------------------------------------------------------------

    def _run_pipeline(self, source: IO[bytes]) -> None:
        size = self.options.queue_size
        decoded = _Channel(size, self._halt)
        normalized = _Channel(size, self._halt)
        classified = _Channel(size, self._halt)

        with self._source_lock:
            self._source_in_use = True
        self._spawn("decoder", self._decode_stage, source, decoded)
        self._spawn("normalizer", self._normalize_stage, decoded, normalized)
        self._spawn("resolver", self._resolve_stage, normalized, classified)

        while True:
            message = classified.receive()
            if message is _HALT:
                raise ImportCancelledError("Import pipeline halted before the end of the source.")
            if isinstance(message, _Classified):
                self._accept(message)
            elif isinstance(message, _Header):
                self._start_processing(message)
            elif isinstance(message, _End):
                self._finish(message)
                return
            elif isinstance(message, _Fatal):
                raise message.error

    def _spawn(self, name: str, target: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(
            target=self._guarded,
            args=(target, args[-1], *args),
            name=f"importer-job-{self.job_id}-{name}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()

    @staticmethod
    def _guarded(target: Callable[..., None], output: _Channel, *args: Any) -> None:
        try:
            target(*args)
        except Exception as exc:  # forwarded to the writer, which fails the job
            output.send(_Fatal(exc))

    def _decode_stage(self, source: IO[bytes], output: _Channel) -> None:
        try:
            self._decode(source, output)
        finally:
            self._release_source()

    def _decode(self, source: IO[bytes], output: _Channel) -> None:
        decoder = ContactCSVDecoder(
            source,
            delimiter=self.options.delimiter,
            has_header=self.options.has_header,
            encoding=self.options.encoding,
        )
        announced = False
        cancelled = False
        try:
            for row in decoder.iter_rows():
                if not announced:
                    if not output.send(_Header(decoder.header, decoder.delimiter or ",")):
                        return
                    announced = True
                if self.cancel_event.is_set():
                    cancelled = True
                    break
                if not output.send(_Row(row)):
                    return
        except CSVAdapterError as exc:
            output.send(_Fatal(SourceUnreadableError(str(exc))))
            return
        if not announced and not output.send(_Header(decoder.header, decoder.delimiter or ",")):
            return
        output.send(_End(decoder.statistics, cancelled=cancelled))

    def _normalize_stage(self, source: _Channel, output: _Channel) -> None:
        normalizer: RowNormalizer | None = None
        delimiter = ","
        workers = self.options.normalizer_workers
        executor = None
        if workers > 1:
            executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="importer-normalize")
        chunk_size = workers * NORMALIZER_CHUNK_PER_WORKER
        try:
            while True:
                message = source.receive()
                if message is _HALT:
                    return
                if isinstance(message, _Header):
                    try:
                        header_message = self._resolve_mapping(message)
                    except InvalidFieldMappingError as exc:
                        output.send(_Fatal(exc))
                        return
                    delimiter = header_message.delimiter
                    normalizer = RowNormalizer(
                        header_message.mapping or {},
                        strict_email=self.options.strict_email,
                        delimiter=delimiter,
                    )
                    if not output.send(header_message):
                        return
                    continue
                if not isinstance(message, _Row):
                    output.send(message)
                    return

                rows = [message.row]
                trailer = None
                if executor is not None:
                    while len(rows) < chunk_size:
                        following = source.receive()
                        if isinstance(following, _Row):
                            rows.append(following.row)
                            continue
                        trailer = following
                        break
                    results = list(executor.map(normalizer, rows))
                else:
                    results = [normalizer(rows[0])]
                for row, result in zip(rows, results):
                    if not output.send(_Normalized(result, row.preview(delimiter))):
                        return
                if trailer is _HALT:
                    return
                if trailer is not None:
                    output.send(trailer)
                    return
        finally:
            if executor is not None:
                executor.shutdown(wait=False, cancel_futures=True)

    def _resolve_mapping(self, message: _Header) -> _Header:
        auto_mapped = False
        mapping = self.field_mapping
        if message.header is None and self.options.has_header:
            # No header line means no data lines either; the job completes empty.
            return _Header(header=None, delimiter=message.delimiter, mapping=dict(mapping or {}))
        if mapping is None:
            suggestion = suggest_field_mapping(message.header or ())
            mapping = suggestion.mapping
            auto_mapped = True
        resolved, warnings = prepare_field_mapping(mapping, message.header)
        return _Header(
            header=message.header,
            delimiter=message.delimiter,
            mapping=resolved,
            warnings=warnings,
            auto_mapped=auto_mapped,
        )

    def _resolve_stage(self, source: _Channel, output: _Channel) -> None:
        resolver = DuplicateResolver()
        try:
            while True:
                message = source.receive()
                if message is _HALT:
                    return
                if isinstance(message, _Normalized):
                    decision = resolver.classify(message.result.record) if message.result.ok else None
                    if not output.send(_Classified(message.result, decision, message.preview)):
                        return
                    continue
                if not output.send(message):
                    return
                if isinstance(message, (_End, _Fatal)):
                    return
        finally:
            resolver.clear()

    # Writer loop --------------------------------------------------------------

    def _start_processing(self, message: _Header) -> None:
        self.mapping_warnings = message.warnings
        self.job.transition_to(ImportJobStatus.PROCESSING)
        if message.auto_mapped:
            self.job.field_mapping = dict(message.mapping or {})
        self.session.commit()
        self._processing = True
        self._last_persisted = time.monotonic()
        metrics.job_started()
        for warning in message.warnings:
            self._logger.warning(warning, extra={"importer_job_id": self.job_id})
        self._logger.info(
            "Import job %s processing",
            self.job_id,
            extra={
                "importer_job_id": self.job_id,
                "importer_header": list(message.header or ()),
                "importer_delimiter": message.delimiter,
                "importer_auto_mapped": message.auto_mapped,
            },
        )

    def _accept(self, message: _Classified) -> None:
        result = message.result
        self.error_log.extend(result.warnings)
        if result.error is not None:
            self.error_log.record(result.error)
            self.counts.unfolded_errors += 1
        elif message.decision is not None and message.decision.is_duplicate:
            self.counts.unfolded_duplicates += 1
        else:
            pending = PendingContact(result.row_number, result.record, message.preview)
            if self.writer.append(pending):
                self._write_pending()
            return

        if self.counts.unfolded >= self.options.batch_size:
            self._fold()
            self._boundary(None)

    def _cancel_requested(self) -> bool:
        return self.cancel_event.is_set() or self._cancel_persisted

    def _check_cancel(self) -> None:
        if not self._cancel_requested():
            return
        discarded = self.writer.discard_pending()
        raise ImportCancelledError(
            f"Import cancelled after {self.writer.batches_written} batch(es); "
            f"{discarded} unwritten row(s) discarded."
        )

    def _write_pending(self) -> None:
        self._check_cancel()
        items = self.writer.take_pending()
        if self.store_lookup is not None and items:
            existing = self.store_lookup.find_existing({item.row_number: item.record for item in items})
            if existing:
                for row_number, reason in existing.items():
                    self._record_store_duplicate(row_number, DuplicateDecision.existing(reason))
                items = [item for item in items if item.row_number not in existing]

        outcome = self.writer.write_batch(items) if items else None
        if outcome is not None:
            self.error_log.extend(outcome.row_errors)
            self.counts.successful += outcome.successful
            self.counts.errors += outcome.failed
            metrics.record_rows("successful", outcome.successful)
            metrics.record_rows("error", outcome.failed)
            if outcome.systemic_failure:
                self._consecutive_failures += 1
            else:
                self._consecutive_failures = 0

        self._fold()
        self._boundary(outcome)

        if self._consecutive_failures >= self.options.max_consecutive_batch_failures:
            raise DestinationUnavailableError(
                f"{self._consecutive_failures} consecutive batches failed to persist; "
                f"last error: {outcome.failure if outcome else 'unknown'}"
            )

    def _record_store_duplicate(self, row_number: int, decision: DuplicateDecision) -> None:
        self.counts.unfolded_duplicates += 1
        self.store_duplicates += 1
        self._logger.debug(
            "Row %s duplicates an existing contact (%s)",
            row_number,
            decision.reason.value,
            extra={
                "importer_job_id": self.job_id,
                "importer_row": row_number,
                "importer_duplicate_reason": decision.reason.value,
                "importer_duplicate_source": decision.source,
            },
        )

    def _fold(self) -> None:
        errors, duplicates = self.counts.fold()
        metrics.record_rows("error", errors)
        metrics.record_rows("duplicate", duplicates)

    def _snapshot(self, status: str = ImportJobStatus.PROCESSING.value, reason: str | None = None) -> ProgressSnapshot:
        return ProgressSnapshot(
            job_id=self.job_id,
            status=status,
            processed_rows=self.counts.processed,
            successful_rows=self.counts.successful,
            error_rows=self.counts.errors,
            duplicate_rows=self.counts.duplicates,
            total_rows=self.total_rows,
            failure_reason=reason,
        )

    def _boundary(self, outcome: BatchOutcome | None) -> None:
        """Batch boundary: publish progress and persist a snapshot when one is due."""

        snapshot = self._snapshot()
        if self.publisher is not None:
            self.publisher.publish(snapshot)
        if time.monotonic() - self._last_persisted >= self.options.snapshot_interval_seconds:
            self._persist_snapshot()
        if outcome is not None and self.batch_listener is not None:
            self.batch_listener(outcome, snapshot)

    def _persist_snapshot(self, *, required: bool = False) -> None:
        try:
            self.job.apply_counts(
                processed=self.counts.processed,
                successful=self.counts.successful,
                errors=self.counts.errors,
                duplicates=self.counts.duplicates,
                total=self.total_rows,
            )
            self.job.errors = self._errors_payload()
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            if required:
                raise DestinationUnavailableError(f"Unable to persist job snapshot: {exc}") from exc
            self._logger.warning(
                "Skipping progress snapshot for import job %s: %s",
                self.job_id,
                exc,
                extra={"importer_job_id": self.job_id},
            )
            return
        self._last_persisted = time.monotonic()
        # Reloaded after the commit, so a cancel issued by another process shows up here.
        if self.job.cancel_requested_at is not None:
            self._cancel_persisted = True

    def _errors_payload(self) -> dict:
        payload = self.error_log.as_payload()
        if self.mapping_warnings:
            payload["mapping_warnings"] = list(self.mapping_warnings)
        return payload

    def _finish(self, end: _End) -> None:
        if end.cancelled:
            self.cancel_event.set()
            self._check_cancel()
        # A cancel arriving after the last row was read only matters while rows are still unwritten.
        if self.writer.pending_count:
            self._write_pending()
        self._fold()
        self.total_rows = end.statistics.rows_decoded
        self._persist_snapshot(required=True)

        self.job.transition_to(ImportJobStatus.COMPLETED)
        self.session.commit()
        self._publish_terminal()
        duration = time.monotonic() - self._started
        metrics.record_job_finished(status=ImportJobStatus.COMPLETED.value, duration_seconds=duration)
        self._logger.info(
            "Import job %s completed",
            self.job_id,
            extra={
                "importer_job_id": self.job_id,
                "importer_total_rows": self.total_rows,
                "importer_successful_rows": self.counts.successful,
                "importer_error_rows": self.counts.errors,
                "importer_duplicate_rows": self.counts.duplicates,
                "importer_rows_skipped_blank": end.statistics.rows_skipped_blank,
                "importer_batches_written": self.writer.batches_written,
                "importer_duration_seconds": round(duration, 3),
            },
        )

    def _fail(self, exc: BaseException) -> None:
        self._halt.set()
        self.writer.discard_pending()
        self._fold()
        reason = exc.describe() if isinstance(exc, ImportFatalError) else f"unexpected: {exc}"
        try:
            self.session.rollback()
            job = self.session.get(ImportJob, self.job_id)
            if job is None:
                raise ImportJobStateError(f"Import job {self.job_id} disappeared while running.")
            self.job = job
            if job.status == ImportJobStatus.PROCESSING:
                job.apply_counts(
                    processed=self.counts.processed,
                    successful=self.counts.successful,
                    errors=self.counts.errors,
                    duplicates=self.counts.duplicates,
                    total=self.total_rows,
                )
                job.errors = self._errors_payload()
            if not job.is_terminal:
                job.transition_to(ImportJobStatus.FAILED, reason=reason)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            self._logger.exception(
                "Unable to record failure for import job %s",
                self.job_id,
                extra={"importer_job_id": self.job_id, "importer_error": reason},
            )
        self._publish_terminal(status=ImportJobStatus.FAILED.value, reason=reason)
        duration = time.monotonic() - self._started
        metrics.record_job_finished(status=ImportJobStatus.FAILED.value, duration_seconds=duration)
        log = self._logger.warning if isinstance(exc, ImportFatalError) else self._logger.error
        log(
            "Import job %s failed: %s",
            self.job_id,
            reason,
            exc_info=not isinstance(exc, ImportFatalError),
            extra={
                "importer_job_id": self.job_id,
                "importer_error": reason,
                "importer_processed_rows": self.counts.processed,
                "importer_batches_written": self.writer.batches_written,
            },
        )
        self.failure_reason = reason

    def _publish_terminal(self, *, status: str = ImportJobStatus.COMPLETED.value, reason: str | None = None) -> None:
        if self.publisher is None:
            return
        self.publisher.publish(self._snapshot(status, reason))

    def _shutdown(self) -> None:
        self._halt.set()
        deadline = time.monotonic() + SHUTDOWN_JOIN_SECONDS
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        stragglers = self.stages_alive
        if stragglers:
            # Usually a decoder blocked inside a read on a stalled stream.
            self._logger.warning(
                "Import job %s stages still running after shutdown: %s",
                self.job_id,
                ", ".join(stragglers),
                extra={"importer_job_id": self.job_id, "importer_stages_alive": stragglers},
            )
        if self._processing:
            metrics.job_stopped()
            self._processing = False

    def _summary(self) -> ImportSummary:
        status = self.job.status
        return ImportSummary(
            job_id=self.job_id,
            status=status.value if isinstance(status, ImportJobStatus) else str(status),
            total_rows=self.total_rows,
            processed_rows=self.counts.processed,
            successful_rows=self.counts.successful,
            error_rows=self.counts.errors,
            duplicate_rows=self.counts.duplicates,
            batches_written=self.writer.batches_written,
            failure_reason=self.failure_reason,
            duration_seconds=time.monotonic() - self._started,
            errors=self._errors_payload(),
        )


__all__ = ["BatchListener", "ImportJobCoordinator", "ImportSummary"]
