"""
Batched, transactional persistence of new contacts.

Each batch is one unit of work: every contact in it is inserted together with
its ``imported`` activity entry and committed, or nothing is. A uniqueness
conflict is retried once without the rows responsible for it; a second
failure turns every row of the batch into a ``RowError`` and the batch is
abandoned so the rest of the file keeps moving.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crm_app.importer.metrics import record_batch
from crm_app.models import ActivityType, Contact, ContactActivity
from crm_app.utils.logging_config import get_importer_logger

from .enrichment import enrich_contact_values, parse_decimal, parse_int, split_technologies
from .errors import BatchWriteError, RowError
from .normalize import ContactRecord

DEFAULT_BATCH_SIZE = 500


@dataclass(frozen=True)
class PendingContact:
    """A record classified as new, waiting for its batch to be written."""

    row_number: int
    record: ContactRecord
    preview: str = ""


@dataclass
class BatchOutcome:
    """Result of resolving one batch (after the optional retry)."""

    batch_number: int
    attempted: int
    written_rows: tuple[int, ...] = ()
    row_errors: tuple[RowError, ...] = ()
    retried: bool = False
    failure: BatchWriteError | None = None
    duration_seconds: float = 0.0
    contact_ids: tuple[int, ...] = field(default=(), repr=False)

    @property
    def successful(self) -> int:
        return len(self.written_rows)

    @property
    def failed(self) -> int:
        return len(self.row_errors)

    @property
    def systemic_failure(self) -> bool:
        """True when the batch failed for a reason other than a row-level constraint."""

        return self.failure is not None and not self.failure.integrity

    @property
    def status(self) -> str:
        if self.failed == 0:
            return "success"
        if self.successful:
            return "partial"
        return "failure"


def _fit_column(name: str, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    length = getattr(Contact.__table__.c[name].type, "length", None)
    if length and len(value) > length:
        return value[:length]
    return value


def build_contact_values(record: ContactRecord, *, auto_enrich: bool = True) -> tuple[dict[str, Any], list[str]]:
    """
    Convert a normalized record into ``Contact`` column values.

    Returns the values and the names of attributes filled by enrichment.
    """

    values: dict[str, Any] = {name: value for name, value in record.to_payload().items()}
    values["employees"] = parse_int(values.get("employees"))
    values["annual_revenue"] = parse_decimal(values.get("annual_revenue"))
    values["technologies"] = split_technologies(values.get("technologies")) or None
    enriched: list[str] = []
    if auto_enrich:
        enriched = enrich_contact_values(values)
    return {name: _fit_column(name, value) for name, value in values.items()}, enriched


def _constraint_message(exc: SQLAlchemyError) -> str:
    original = getattr(exc, "orig", None)
    return str(original or exc).strip().splitlines()[0]


class ContactBatchWriter:
    """
    Accumulate new contacts and persist them in fixed-size batches.

    Only one batch is ever in flight; the writer is driven from a single
    thread and owns the session it is given for the lifetime of a job.
    """

    def __init__(
        self,
        session: Session,
        *,
        job_id: int | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        auto_enrich: bool = True,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.session = session
        self.job_id = job_id
        self.batch_size = batch_size
        self.auto_enrich = auto_enrich
        self.batches_written = 0
        self._pending: list[PendingContact] = []

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def is_full(self) -> bool:
        return len(self._pending) >= self.batch_size

    def append(self, item: PendingContact) -> bool:
        """Queue a contact; returns True once the batch is full and should be written."""

        self._pending.append(item)
        return self.is_full

    def take_pending(self) -> list[PendingContact]:
        pending, self._pending = self._pending, []
        return pending

    def discard_pending(self) -> int:
        """Drop the unwritten batch (cancellation); returns how many rows were dropped."""

        return len(self.take_pending())

    def flush(self) -> BatchOutcome | None:
        """Write whatever is pending, if anything."""

        if not self._pending:
            return None
        return self.write_batch(self.take_pending())

    def write_batch(self, items: Sequence[PendingContact]) -> BatchOutcome:
        self.batches_written += 1
        batch_number = self.batches_written
        started = time.perf_counter()
        outcome = self._write_with_retry(batch_number, list(items))
        outcome.duration_seconds = time.perf_counter() - started
        record_batch(status=outcome.status, duration_seconds=outcome.duration_seconds)

        logger = get_importer_logger()
        log_extra = {
            "importer_job_id": self.job_id,
            "importer_batch_number": batch_number,
            "importer_batch_attempted": outcome.attempted,
            "importer_batch_written": outcome.successful,
            "importer_batch_failed": outcome.failed,
            "importer_batch_retried": outcome.retried,
        }
        if outcome.failure is not None:
            logger.warning("Contact batch %s failed: %s", batch_number, outcome.failure, extra=log_extra)
        else:
            logger.debug("Contact batch %s written", batch_number, extra=log_extra)
        return outcome

    def _write_with_retry(self, batch_number: int, items: list[PendingContact]) -> BatchOutcome:
        try:
            contact_ids = self._persist(items)
        except IntegrityError as exc:
            self.session.rollback()
            return self._retry_without_conflicts(batch_number, items, exc)
        except SQLAlchemyError as exc:
            self.session.rollback()
            message = f"Batch write failed: {_constraint_message(exc)}"
            return BatchOutcome(
                batch_number=batch_number,
                attempted=len(items),
                row_errors=tuple(self._row_error(item, message) for item in items),
                failure=BatchWriteError(message),
            )
        return BatchOutcome(
            batch_number=batch_number,
            attempted=len(items),
            written_rows=tuple(item.row_number for item in items),
            contact_ids=contact_ids,
        )

    def _retry_without_conflicts(
        self,
        batch_number: int,
        items: list[PendingContact],
        exc: IntegrityError,
    ) -> BatchOutcome:
        constraint_message = _constraint_message(exc)
        try:
            offending = self.locate_conflicts(items)
        except SQLAlchemyError as lookup_exc:
            self.session.rollback()
            message = f"Batch write failed: {_constraint_message(lookup_exc)}"
            return BatchOutcome(
                batch_number=batch_number,
                attempted=len(items),
                row_errors=tuple(self._row_error(item, message) for item in items),
                failure=BatchWriteError(message),
            )

        if not offending:
            # The store did not say which rows conflict; the batch fails as a unit.
            return BatchOutcome(
                batch_number=batch_number,
                attempted=len(items),
                row_errors=tuple(self._row_error(item, constraint_message) for item in items),
                failure=BatchWriteError(constraint_message, integrity=True),
            )

        conflict_errors = [
            self._row_error(item, constraint_message, fields=("email",))
            for item in items
            if item.row_number in offending
        ]
        remaining = [item for item in items if item.row_number not in offending]
        if not remaining:
            return BatchOutcome(
                batch_number=batch_number,
                attempted=len(items),
                row_errors=tuple(conflict_errors),
                retried=False,
            )

        try:
            contact_ids = self._persist(remaining)
        except SQLAlchemyError as retry_exc:
            self.session.rollback()
            retry_message = f"Batch retry failed: {_constraint_message(retry_exc)}"
            failed = conflict_errors + [self._row_error(item, retry_message) for item in remaining]
            failed.sort(key=lambda error: error.row_number)
            return BatchOutcome(
                batch_number=batch_number,
                attempted=len(items),
                row_errors=tuple(failed),
                retried=True,
                failure=BatchWriteError(
                    retry_message,
                    offending_rows=sorted(offending),
                    integrity=isinstance(retry_exc, IntegrityError),
                ),
            )

        return BatchOutcome(
            batch_number=batch_number,
            attempted=len(items),
            written_rows=tuple(item.row_number for item in remaining),
            row_errors=tuple(conflict_errors),
            retried=True,
            contact_ids=contact_ids,
        )

    def locate_conflicts(self, items: Iterable[PendingContact]) -> set[int]:
        """
        Row numbers in ``items`` whose email collides with a live contact or an
        earlier row of the same batch.
        """

        items = list(items)
        emails = sorted({item.record.email for item in items if item.record.email})
        existing: set[str] = set()
        if emails:
            rows = self.session.execute(
                Contact.__table__.select()
                .with_only_columns(func.lower(Contact.email))
                .where(func.lower(Contact.email).in_(emails), Contact.is_deleted.is_(False))
            )
            existing = {value for (value,) in rows}

        offending: set[int] = set()
        seen: set[str] = set()
        for item in items:
            email = item.record.email
            if not email:
                continue
            if email in existing or email in seen:
                offending.add(item.row_number)
            seen.add(email)
        return offending

    def _persist(self, items: Sequence[PendingContact]) -> tuple[int, ...]:
        contacts: list[Contact] = []
        enrichments: list[list[str]] = []
        for item in items:
            values, enriched = build_contact_values(item.record, auto_enrich=self.auto_enrich)
            contacts.append(Contact(**values, import_job_id=self.job_id))
            enrichments.append(enriched)

        self.session.add_all(contacts)
        self.session.flush()

        activities = []
        for item, contact, enriched in zip(items, contacts, enrichments):
            changes: dict[str, Any] = {"import_job_id": self.job_id, "row_number": item.row_number}
            if enriched:
                changes["enriched"] = enriched
            activities.append(
                ContactActivity(
                    contact_id=contact.id,
                    activity_type=ActivityType.IMPORTED,
                    description=f"Imported from CSV row {item.row_number}",
                    changes=changes,
                )
            )
        self.session.add_all(activities)
        self.session.commit()
        return tuple(contact.id for contact in contacts)

    @staticmethod
    def _row_error(item: PendingContact, message: str, *, fields: Sequence[str] | None = None) -> RowError:
        if fields is None:
            return RowError.for_row(item.row_number, message, preview=item.preview)
        return RowError.for_row(item.row_number, message, fields=fields, preview=item.preview)


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "BatchOutcome",
    "ContactBatchWriter",
    "PendingContact",
    "build_contact_values",
]
