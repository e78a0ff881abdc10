"""
SQLAlchemy models for bulk contact import jobs.

An ``ImportJob`` is created before any bytes are read and is the record
external callers poll for progress and completion.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, Enum, Index
from sqlalchemy.orm import Mapped, mapped_column

from ..base import BaseModel, db


class ImportJobStatus(str, enum.Enum):
    """Lifecycle states for an import job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ImportJobStatus.COMPLETED, ImportJobStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[ImportJobStatus, frozenset[ImportJobStatus]] = {
    ImportJobStatus.PENDING: frozenset({ImportJobStatus.PROCESSING, ImportJobStatus.FAILED}),
    ImportJobStatus.PROCESSING: frozenset({ImportJobStatus.COMPLETED, ImportJobStatus.FAILED}),
    ImportJobStatus.COMPLETED: frozenset(),
    ImportJobStatus.FAILED: frozenset(),
}


class ImportJobStateError(RuntimeError):
    """Raised when an import job is mutated in a way its lifecycle forbids."""


class ImportJob(BaseModel):
    """Progress, counts, and captured errors for one CSV import."""

    __tablename__ = "import_jobs"

    id: Mapped[int] = mapped_column(primary_key=True)
    filename: Mapped[str] = mapped_column(db.String(255), nullable=False)
    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="import_job_status_enum"),
        nullable=False,
        default=ImportJobStatus.PENDING,
        index=True,
    )
    total_rows: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    processed_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    successful_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    duplicate_rows: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    field_mapping: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Source column name to contact attribute, in header order.",
    )
    errors: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    options_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Effective import options (delimiter, header, encoding, batch size, ...).",
    )
    failure_reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    cancel_requested_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "processed_rows = successful_rows + error_rows + duplicate_rows",
            name="ck_import_jobs_row_accounting",
        ),
        Index("idx_import_jobs_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ImportJob id={self.id} status={self.status.value} processed={self.processed_rows}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition_to(self, status: ImportJobStatus, *, reason: str | None = None) -> None:
        """
        Move the job along its lifecycle, stamping timestamps as it goes.

        ``pending -> processing -> {completed, failed}`` plus ``pending -> failed``
        for jobs that fail before the first byte is read.
        """
        current = ImportJobStatus(self.status or ImportJobStatus.PENDING)
        if status not in _ALLOWED_TRANSITIONS[current]:
            raise ImportJobStateError(f"Import job {self.id} cannot move from {current.value} to {status.value}.")
        now = datetime.now(timezone.utc)
        self.status = status
        if status is ImportJobStatus.PROCESSING:
            self.started_at = now
        elif status in TERMINAL_STATUSES:
            self.completed_at = now
            if reason:
                self.failure_reason = reason

    def apply_counts(
        self,
        *,
        processed: int,
        successful: int,
        errors: int,
        duplicates: int,
        total: int | None = None,
    ) -> None:
        """Overwrite the running counters from a coordinator snapshot."""
        if self.is_terminal:
            raise ImportJobStateError(f"Import job {self.id} is {self.status.value}; counts are frozen.")
        if processed != successful + errors + duplicates:
            raise ValueError(
                f"Row accounting mismatch: processed={processed} successful={successful} "
                f"errors={errors} duplicates={duplicates}"
            )
        if processed < (self.processed_rows or 0):
            raise ValueError("processed_rows must not decrease while a job is running.")
        self.processed_rows = processed
        self.successful_rows = successful
        self.error_rows = errors
        self.duplicate_rows = duplicates
        if total is not None:
            self.total_rows = total

    def request_cancel(self) -> None:
        if self.cancel_requested_at is None:
            self.cancel_requested_at = datetime.now(timezone.utc)
