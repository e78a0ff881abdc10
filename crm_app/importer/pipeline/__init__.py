"""Importer pipeline helpers."""

from __future__ import annotations

from .analysis import CSVAnalysis, analyze_csv, estimate_processing_seconds
from .batch_writer import BatchOutcome, ContactBatchWriter, PendingContact, build_contact_values
from .coordinator import ImportJobCoordinator, ImportSummary
from .dedupe import ContactStoreLookup, DuplicateDecision, DuplicateReason, DuplicateResolver
from .enrichment import calculate_lead_score, enrich_contact_values
from .errors import (
    DestinationUnavailableError,
    ImportCancelledError,
    ImportFatalError,
    InvalidFieldMappingError,
    InvalidImportOptionsError,
    RowError,
    RowErrorLog,
    SourceUnreadableError,
)
from .job_service import HEARTBEAT_TASK_NAME, INGEST_TASK_NAME, ImportJobService, serialize_job
from .normalize import ContactRecord, NormalizationResult, RowNormalizer, normalize_row, prepare_field_mapping
from .options import ImportOptions
from .progress import ProgressPublisher, ProgressSnapshot, ProgressSubscription

__all__ = [
    "BatchOutcome",
    "CSVAnalysis",
    "ContactBatchWriter",
    "ContactRecord",
    "ContactStoreLookup",
    "DestinationUnavailableError",
    "DuplicateDecision",
    "DuplicateReason",
    "DuplicateResolver",
    "HEARTBEAT_TASK_NAME",
    "INGEST_TASK_NAME",
    "ImportCancelledError",
    "ImportFatalError",
    "ImportJobCoordinator",
    "ImportJobService",
    "ImportOptions",
    "ImportSummary",
    "InvalidFieldMappingError",
    "InvalidImportOptionsError",
    "NormalizationResult",
    "PendingContact",
    "ProgressPublisher",
    "ProgressSnapshot",
    "ProgressSubscription",
    "RowError",
    "RowErrorLog",
    "RowNormalizer",
    "SourceUnreadableError",
    "analyze_csv",
    "build_contact_values",
    "calculate_lead_score",
    "enrich_contact_values",
    "estimate_processing_seconds",
    "normalize_row",
    "prepare_field_mapping",
    "serialize_job",
]
