"""
Error taxonomy for the contact import pipeline.

Row-level problems are values (``RowError``) that flow through the pipeline
and are counted; batch-level persistence problems are ``BatchWriteError``;
anything that must stop the job is an ``ImportFatalError`` subclass.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Literal, Sequence

from crm_app.models.importer.schema import ImportJobStateError

PREVIEW_LIMIT = 200
ROW_FIELD = "__row__"

Severity = Literal["error", "warning"]


@dataclass(frozen=True)
class RowError:
    """A rejected (``error``) or flagged (``warning``) source row."""

    row_number: int
    fields: tuple[str, ...]
    severity: Severity
    message: str
    preview: str = ""

    @classmethod
    def for_row(
        cls,
        row_number: int,
        message: str,
        *,
        fields: Iterable[str] = (ROW_FIELD,),
        severity: Severity = "error",
        preview: str = "",
    ) -> "RowError":
        return cls(
            row_number=row_number,
            fields=tuple(fields),
            severity=severity,
            message=message,
            preview=truncate_preview(preview),
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "row": self.row_number,
            "fields": list(self.fields),
            "severity": self.severity,
            "message": self.message,
            "preview": self.preview,
        }


def truncate_preview(value: str, limit: int = PREVIEW_LIMIT) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 3] + "..."


def build_preview(values: Sequence[str], delimiter: str = ",") -> str:
    return truncate_preview(delimiter.join(values))


class RowErrorLog:
    """
    Bounded store of row errors and warnings.

    Counts are exact; only the first ``max_retained`` errors and the first
    ``max_retained`` warnings are kept verbatim.
    """

    def __init__(self, max_retained: int = 100) -> None:
        self.max_retained = max(0, max_retained)
        self.error_count = 0
        self.warning_count = 0
        self._errors: list[RowError] = []
        self._warnings: list[RowError] = []

    def record(self, error: RowError) -> None:
        if error.severity == "warning":
            self.warning_count += 1
            if len(self._warnings) < self.max_retained:
                self._warnings.append(error)
            return
        self.error_count += 1
        if len(self._errors) < self.max_retained:
            self._errors.append(error)

    def extend(self, errors: Iterable[RowError]) -> None:
        for error in errors:
            self.record(error)

    @property
    def truncated(self) -> bool:
        return self.error_count > len(self._errors) or self.warning_count > len(self._warnings)

    def as_payload(self) -> dict[str, Any]:
        return {
            "details": [error.as_dict() for error in self._errors],
            "warnings": [warning.as_dict() for warning in self._warnings],
            "retained": len(self._errors),
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "truncated": self.truncated,
        }


class BatchWriteError(Exception):
    """A batch persistence attempt failed as a unit."""

    def __init__(
        self,
        message: str,
        *,
        offending_rows: Sequence[int] = (),
        integrity: bool = False,
    ) -> None:
        super().__init__(message)
        self.offending_rows = tuple(offending_rows)
        self.integrity = integrity


class ImportFatalError(Exception):
    """Base class for conditions that abort an import job."""

    reason_code = "fatal"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def describe(self) -> str:
        return f"{self.reason_code}: {self.message}"


class InvalidImportOptionsError(ImportFatalError):
    reason_code = "invalid_options"


class InvalidFieldMappingError(InvalidImportOptionsError):
    reason_code = "invalid_field_mapping"

    def __init__(self, message: str, *, missing: Sequence[str] = (), unknown: Sequence[str] = ()) -> None:
        super().__init__(message)
        self.missing = tuple(missing)
        self.unknown = tuple(unknown)


class SourceUnreadableError(ImportFatalError):
    reason_code = "source_unreadable"


class DestinationUnavailableError(ImportFatalError):
    reason_code = "destination_unavailable"


class ImportCancelledError(ImportFatalError):
    reason_code = "cancelled"


__all__ = [
    "PREVIEW_LIMIT",
    "ROW_FIELD",
    "RowError",
    "RowErrorLog",
    "BatchWriteError",
    "ImportFatalError",
    "InvalidImportOptionsError",
    "InvalidFieldMappingError",
    "SourceUnreadableError",
    "DestinationUnavailableError",
    "ImportCancelledError",
    "ImportJobStateError",
    "build_preview",
    "truncate_preview",
]
