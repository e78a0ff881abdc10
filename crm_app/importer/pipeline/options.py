"""
Per-job import options.

Defaults come from the Flask config (``IMPORTER_*`` keys); callers override
individual values per job. The effective options are stored on the job so a
retry or an audit sees exactly what ran.
"""

from __future__ import annotations

import codecs
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Mapping

from .errors import InvalidImportOptionsError

AUTO_DELIMITER = "auto"

_CONFIG_KEYS = {
    "batch_size": "IMPORTER_BATCH_SIZE",
    "max_retained_errors": "IMPORTER_MAX_RETAINED_ERRORS",
    "queue_size": "IMPORTER_QUEUE_SIZE",
    "normalizer_workers": "IMPORTER_NORMALIZER_WORKERS",
    "cross_job_dedupe": "IMPORTER_CROSS_JOB_DEDUPE",
    "auto_enrich": "IMPORTER_AUTO_ENRICH",
    "strict_email": "IMPORTER_STRICT_EMAIL_VALIDATION",
    "snapshot_interval_seconds": "IMPORTER_SNAPSHOT_INTERVAL_SECONDS",
    "max_consecutive_batch_failures": "IMPORTER_MAX_CONSECUTIVE_BATCH_FAILURES",
}


@dataclass(frozen=True)
class ImportOptions:
    delimiter: str | None = None
    has_header: bool = True
    encoding: str = "utf-8"
    batch_size: int = 500
    max_retained_errors: int = 100
    queue_size: int = 2000
    normalizer_workers: int = 1
    cross_job_dedupe: bool = True
    auto_enrich: bool = True
    strict_email: bool = False
    snapshot_interval_seconds: float = 2.0
    max_consecutive_batch_failures: int = 3

    @classmethod
    def from_config(cls, config: Mapping[str, Any], overrides: Mapping[str, Any] | None = None) -> "ImportOptions":
        """Build options from app config defaults plus caller overrides (``None`` values are ignored)."""
        values: dict[str, Any] = {}
        for name, key in _CONFIG_KEYS.items():
            if config.get(key) is not None:
                values[name] = config[key]
        known = {item.name for item in fields(cls)}
        for name, value in (overrides or {}).items():
            if name not in known:
                raise InvalidImportOptionsError(f"Unknown import option '{name}'.")
            if value is not None:
                values[name] = value
        return cls(**values).validated()

    def validated(self) -> "ImportOptions":
        delimiter = self.delimiter
        if delimiter is not None:
            if delimiter == AUTO_DELIMITER or delimiter == "":
                delimiter = None
            elif delimiter in {"\\t", "tab"}:
                delimiter = "\t"
        if delimiter is not None and (len(delimiter) != 1 or delimiter in {'"', "\r", "\n"}):
            raise InvalidImportOptionsError(
                f"Delimiter must be a single character other than a quote or newline, got {delimiter!r}."
            )
        try:
            codecs.lookup(self.encoding)
        except LookupError as exc:
            raise InvalidImportOptionsError(f"Unknown text encoding '{self.encoding}'.") from exc
        for name in ("batch_size", "queue_size", "normalizer_workers", "max_consecutive_batch_failures"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise InvalidImportOptionsError(f"Option '{name}' must be a positive integer, got {value!r}.")
        if not isinstance(self.max_retained_errors, int) or self.max_retained_errors < 0:
            raise InvalidImportOptionsError("Option 'max_retained_errors' must be a non-negative integer.")
        if self.snapshot_interval_seconds < 0:
            raise InvalidImportOptionsError("Option 'snapshot_interval_seconds' must not be negative.")
        return replace(self, delimiter=delimiter)

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["delimiter"] = self.delimiter or AUTO_DELIMITER
        return payload
