"""Prometheus metrics helpers for the contact import pipeline."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Gauge, Histogram

RowOutcome = Literal["successful", "error", "duplicate"]
BatchStatus = Literal["success", "partial", "failure"]

_rows_counter = Counter(
    "importer_rows_total",
    "Rows processed by the contact importer, by outcome.",
    ["outcome"],
)
_batch_counter = Counter(
    "importer_batches_total",
    "Contact batches written by status.",
    ["status"],
)
_batch_duration = Histogram(
    "importer_batch_duration_seconds",
    "Duration of contact batch persistence in seconds.",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)
_jobs_counter = Counter(
    "importer_jobs_total",
    "Import jobs reaching a terminal status.",
    ["status"],
)
_job_duration = Histogram(
    "importer_job_duration_seconds",
    "Wall-clock duration of import jobs in seconds.",
    buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1800, 3600, 7200),
)
_snapshots_dropped = Counter(
    "importer_progress_snapshots_dropped_total",
    "Progress snapshots dropped because a subscriber queue was full.",
)
_active_jobs = Gauge(
    "importer_active_jobs",
    "Import jobs currently processing in this process.",
)


def record_rows(outcome: RowOutcome, count: int) -> None:
    if count > 0:
        _rows_counter.labels(outcome=outcome).inc(count)


def record_batch(*, status: BatchStatus, duration_seconds: float) -> None:
    """Capture metrics for one batch write."""

    _batch_counter.labels(status=status).inc()
    _batch_duration.observe(max(duration_seconds, 0.0))


def record_job_finished(*, status: str, duration_seconds: float) -> None:
    _jobs_counter.labels(status=status).inc()
    _job_duration.observe(max(duration_seconds, 0.0))


def record_snapshot_dropped(count: int = 1) -> None:
    _snapshots_dropped.inc(count)


def job_started() -> None:
    _active_jobs.inc()


def job_stopped() -> None:
    _active_jobs.dec()
