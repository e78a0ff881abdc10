"""Importer models package."""

from .schema import TERMINAL_STATUSES, ImportJob, ImportJobStateError, ImportJobStatus

__all__ = ["ImportJob", "ImportJobStatus", "ImportJobStateError", "TERMINAL_STATUSES"]
