"""
Best-effort fan-out of job progress snapshots to live observers.

Publishing never blocks: each subscriber owns a small bounded queue and an
update that does not fit is dropped (the next snapshot supersedes it). The
terminal snapshot is the exception; it evicts the oldest queued snapshot so
observers always learn how a job ended. Late subscribers only see future
snapshots and should read the job record for current state.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import asdict, dataclass
from typing import Iterator

from crm_app.importer.metrics import record_snapshot_dropped
from crm_app.models.importer.schema import TERMINAL_STATUSES, ImportJob, ImportJobStatus

DEFAULT_QUEUE_SIZE = 16
DEFAULT_THROTTLE_MS = 200

_TERMINAL_VALUES = frozenset(status.value for status in TERMINAL_STATUSES)


@dataclass(frozen=True)
class ProgressSnapshot:
    job_id: int
    status: str
    processed_rows: int
    successful_rows: int
    error_rows: int
    duplicate_rows: int
    total_rows: int | None = None
    failure_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_VALUES

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_job(cls, job: ImportJob) -> "ProgressSnapshot":
        status = job.status.value if isinstance(job.status, ImportJobStatus) else str(job.status)
        return cls(
            job_id=job.id,
            status=status,
            processed_rows=job.processed_rows or 0,
            successful_rows=job.successful_rows or 0,
            error_rows=job.error_rows or 0,
            duplicate_rows=job.duplicate_rows or 0,
            total_rows=job.total_rows,
            failure_reason=job.failure_reason,
        )


class ProgressSubscription:
    """One observer's bounded view of a job's progress topic."""

    def __init__(self, publisher: "ProgressPublisher", job_id: int, maxsize: int) -> None:
        self.job_id = job_id
        self.dropped = 0
        self.finished = False
        self._publisher = publisher
        self._queue: "queue.Queue[ProgressSnapshot]" = queue.Queue(maxsize=maxsize)

    def __enter__(self) -> "ProgressSubscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._publisher.unsubscribe(self)

    def get(self, timeout: float | None = None) -> ProgressSnapshot | None:
        """Next queued snapshot, or ``None`` when nothing arrives within ``timeout``."""

        try:
            return self._queue.get(timeout=timeout) if timeout else self._queue.get_nowait()
        except queue.Empty:
            return None

    def listen(self, *, heartbeat_seconds: float = 15.0) -> Iterator[ProgressSnapshot | None]:
        """
        Yield snapshots as they arrive, ``None`` after each idle heartbeat
        interval, and stop after the terminal snapshot.
        """

        while True:
            snapshot = self.get(timeout=heartbeat_seconds)
            if snapshot is None and self.finished and self._queue.empty():
                return
            yield snapshot
            if snapshot is not None and snapshot.is_terminal:
                return

    def offer(self, snapshot: ProgressSnapshot) -> bool:
        try:
            self._queue.put_nowait(snapshot)
            return True
        except queue.Full:
            pass
        if not snapshot.is_terminal:
            self.dropped += 1
            return False
        try:
            self._queue.get_nowait()
            self.dropped += 1
        except queue.Empty:
            pass
        try:
            self._queue.put_nowait(snapshot)
        except queue.Full:
            self.dropped += 1
            return False
        return True


class ProgressPublisher:
    """In-process publish/subscribe hub keyed by import job id."""

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE, throttle_ms: int = DEFAULT_THROTTLE_MS) -> None:
        self.queue_size = max(1, queue_size)
        self.throttle_seconds = max(0, throttle_ms) / 1000.0
        self.dropped = 0
        self._lock = threading.Lock()
        self._subscribers: dict[int, list[ProgressSubscription]] = {}
        self._last_published: dict[int, float] = {}

    @classmethod
    def from_config(cls, config) -> "ProgressPublisher":
        return cls(
            queue_size=int(config.get("IMPORTER_PROGRESS_QUEUE_SIZE") or DEFAULT_QUEUE_SIZE),
            throttle_ms=int(config.get("IMPORTER_PROGRESS_THROTTLE_MS") or 0),
        )

    def subscribe(self, job_id: int) -> ProgressSubscription:
        subscription = ProgressSubscription(self, job_id, self.queue_size)
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.job_id)
            if not subscribers:
                return
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.job_id, None)

    def subscriber_count(self, job_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))

    def publish(self, snapshot: ProgressSnapshot) -> int:
        """Deliver ``snapshot`` to current subscribers; returns how many accepted it."""

        now = time.monotonic()
        with self._lock:
            if not snapshot.is_terminal:
                last = self._last_published.get(snapshot.job_id)
                if last is not None and now - last < self.throttle_seconds:
                    return 0
                self._last_published[snapshot.job_id] = now
                subscribers = list(self._subscribers.get(snapshot.job_id, ()))
            else:
                self._last_published.pop(snapshot.job_id, None)
                subscribers = self._subscribers.pop(snapshot.job_id, [])

        delivered = 0
        for subscription in subscribers:
            if subscription.offer(snapshot):
                delivered += 1
            else:
                self.dropped += 1
                record_snapshot_dropped()
            if snapshot.is_terminal:
                subscription.finished = True
        return delivered


__all__ = ["ProgressPublisher", "ProgressSnapshot", "ProgressSubscription"]
