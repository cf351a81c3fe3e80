"""Queue store: the single source of truth for upload job records."""

import dataclasses
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from dropqueue.services.models import JobRecord, JobStatus

logger = logging.getLogger(__name__)

# Fields of a JobRecord that update_status() may patch
PATCHABLE_FIELDS = frozenset(
    {
        "status",
        "progress",
        "error",
        "result",
        "attempt",
        "history",
        "started_at",
        "completed_at",
    }
)


@dataclass(frozen=True)
class QueueSnapshot:
    """Immutable, insertion-ordered view of the queue (oldest first)."""

    jobs: tuple[JobRecord, ...] = ()
    version: int = 0

    def __len__(self) -> int:
        return len(self.jobs)

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.jobs)

    def get(self, job_id: str) -> JobRecord | None:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None

    def ids(self) -> set[str]:
        return {job.id for job in self.jobs}

    def with_status(self, status: JobStatus) -> list[JobRecord]:
        """Jobs currently in ``status``, in queue order."""
        return [job for job in self.jobs if job.status == status]

    def count(self, status: JobStatus) -> int:
        return sum(1 for job in self.jobs if job.status == status)

    def counts(self) -> dict[str, int]:
        """Number of jobs per status value."""
        return {status.value: self.count(status) for status in JobStatus}


SnapshotListener = Callable[[QueueSnapshot], None]


class QueueStore:
    """Ordered collection of JobRecords with a single mutation path.

    Every mutation builds the next QueueSnapshot and publishes it with one
    reference swap, so readers on any thread see either the old or the new
    state, never a mix. Listeners are notified after each effective mutation.
    """

    def __init__(self) -> None:
        self._records: dict[str, JobRecord] = {}
        self._snapshot = QueueSnapshot()
        self._listeners: list[SnapshotListener] = []
        self._lock = threading.Lock()

    def snapshot(self) -> QueueSnapshot:
        """Return the current immutable view."""
        return self._snapshot

    def get(self, job_id: str) -> JobRecord | None:
        """Get a job record by ID."""
        return self._snapshot.get(job_id)

    def subscribe(self, listener: SnapshotListener) -> None:
        """Register a callback invoked with each new snapshot."""
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SnapshotListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def append(self, jobs: Iterable[JobRecord]) -> list[JobRecord]:
        """Append new records at the tail of the queue.

        Records whose ID is already present are ignored.

        Returns:
            The records actually appended
        """
        with self._lock:
            added = []
            for job in jobs:
                if job.id in self._records:
                    continue
                self._records[job.id] = job
                added.append(job)
            if not added:
                return []
            snapshot = self._publish()
        self._notify(snapshot)
        return added

    def update_status(self, job_id: str, **patch: Any) -> JobRecord | None:
        """Apply a field patch to one record.

        Unknown IDs are a no-op. A progress-only patch is ignored unless the
        job is uploading and the new value is not lower than the stored one.

        Args:
            job_id: The job to patch
            **patch: JobRecord fields to replace

        Returns:
            The updated record, the unchanged record if the patch was ignored,
            or None if the job does not exist
        """
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch fields: {', '.join(sorted(unknown))}")

        with self._lock:
            current = self._records.get(job_id)
            if current is None:
                return None

            if set(patch) == {"progress"}:
                progress = int(patch["progress"])
                if current.status != JobStatus.UPLOADING or progress <= current.progress:
                    return current
                patch["progress"] = min(100, progress)

            updated = dataclasses.replace(current, **patch)
            if updated == current:
                return current
            self._records[job_id] = updated
            snapshot = self._publish()
        self._notify(snapshot)
        return updated

    def remove(self, job_id: str) -> JobRecord | None:
        """Delete one record regardless of its status."""
        with self._lock:
            removed = self._records.pop(job_id, None)
            if removed is None:
                return None
            snapshot = self._publish()
        self._notify(snapshot)
        return removed

    def remove_where(self, predicate: Callable[[JobRecord], bool]) -> list[JobRecord]:
        """Delete every record matching ``predicate`` in one mutation."""
        with self._lock:
            doomed = [job for job in self._records.values() if predicate(job)]
            if not doomed:
                return []
            for job in doomed:
                del self._records[job.id]
            snapshot = self._publish()
        self._notify(snapshot)
        return doomed

    def _publish(self) -> QueueSnapshot:
        """Build and swap in the next snapshot (caller holds the lock)."""
        self._snapshot = QueueSnapshot(
            jobs=tuple(self._records.values()),
            version=self._snapshot.version + 1,
        )
        return self._snapshot

    def _notify(self, snapshot: QueueSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.warning("Queue listener failed", exc_info=True)
