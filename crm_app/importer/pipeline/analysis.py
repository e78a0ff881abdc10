"""
Pre-import inspection of a CSV file.

``analyze_csv`` streams the file once through the same decoder the pipeline
uses and reports what the caller needs to build a field mapping: the detected
delimiter, the (renamed) headers, a short preview, a suggested mapping, and
structural problems worth fixing before importing.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import IO, Any

from crm_app.importer.adapters.csv_contacts import ContactCSVDecoder, sanitize_header
from crm_app.importer.contracts import MappingSuggestion, suggest_field_mapping

PREVIEW_ROWS = 5
MAX_REPORTED_ISSUES = 10
ROWS_PER_SECOND = 1000


@dataclass
class CSVAnalysis:
    delimiter: str
    headers: tuple[str, ...]
    has_header: bool
    total_rows: int
    rows_skipped_blank: int
    preview: list[dict[str, str]]
    issues: list[str]
    issue_count: int
    estimated_seconds: int
    suggestion: MappingSuggestion | None = None
    header_issues: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "delimiter": self.delimiter,
            "headers": list(self.headers),
            "has_header": self.has_header,
            "total_rows": self.total_rows,
            "rows_skipped_blank": self.rows_skipped_blank,
            "preview": self.preview,
            "issues": (self.header_issues + self.issues)[:MAX_REPORTED_ISSUES],
            "issue_count": self.issue_count + len(self.header_issues),
            "estimated_seconds": self.estimated_seconds,
            "suggested_mapping": self.suggestion.as_dict() if self.suggestion else None,
        }


def estimate_processing_seconds(total_rows: int) -> int:
    return max(1, math.ceil(total_rows / ROWS_PER_SECOND))


def _header_issues(raw_header: tuple[str, ...] | None, header: tuple[str, ...] | None) -> list[str]:
    if not raw_header or not header:
        return []
    issues: list[str] = []
    for position, (raw, renamed) in enumerate(zip(raw_header, header), start=1):
        cleaned = sanitize_header(raw)
        if not cleaned:
            issues.append(f"Column {position} has an empty header; it is addressed as '{renamed}'.")
        elif cleaned != renamed:
            issues.append(f"Duplicate header '{cleaned}' in column {position} renamed to '{renamed}'.")
    return issues


def analyze_csv(
    source: IO[bytes],
    *,
    delimiter: str | None = None,
    has_header: bool = True,
    encoding: str = "utf-8",
    preview_rows: int = PREVIEW_ROWS,
) -> CSVAnalysis:
    """Inspect ``source`` without importing anything."""

    decoder = ContactCSVDecoder(source, delimiter=delimiter, has_header=has_header, encoding=encoding)
    preview: list[dict[str, str]] = []
    issues: list[str] = []
    issue_count = 0

    for row in decoder.iter_rows():
        problem = None
        if row.is_error:
            problem = f"Row {row.row_number}: {row.error}."
        elif row.header is not None and len(row.values) != len(row.header):
            problem = f"Row {row.row_number} has {len(row.values)} columns; expected {len(row.header)}."
        if problem is not None:
            issue_count += 1
            if len(issues) < MAX_REPORTED_ISSUES:
                issues.append(problem)
        if len(preview) < preview_rows and not row.is_error:
            preview.append(row.fields)

    headers = decoder.header
    if headers is None:
        width = max((len(row) for row in preview), default=0)
        headers = tuple(f"column_{position}" for position in range(1, width + 1))

    statistics = decoder.statistics
    return CSVAnalysis(
        delimiter=decoder.delimiter or ",",
        headers=headers,
        has_header=has_header,
        total_rows=statistics.rows_decoded,
        rows_skipped_blank=statistics.rows_skipped_blank,
        preview=preview,
        issues=issues,
        issue_count=issue_count,
        estimated_seconds=estimate_processing_seconds(statistics.rows_decoded),
        suggestion=suggest_field_mapping(headers) if has_header else None,
        header_issues=_header_issues(decoder.raw_header, decoder.header),
    )


__all__ = ["CSVAnalysis", "analyze_csv", "estimate_processing_seconds"]
