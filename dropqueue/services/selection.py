"""Selection set of job IDs marked for bulk actions."""

import threading
from collections.abc import Iterable


class SelectionSet:
    """Set of selected job IDs; has no effect on scheduling."""

    def __init__(self) -> None:
        self._ids: set[str] = set()
        self._lock = threading.Lock()

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def toggle(self, job_id: str) -> bool:
        """Flip membership of ``job_id``.

        Returns:
            True if the job is selected after the call
        """
        with self._lock:
            if job_id in self._ids:
                self._ids.discard(job_id)
                return False
            self._ids.add(job_id)
            return True

    def select(self, job_ids: Iterable[str]) -> None:
        with self._lock:
            self._ids.update(job_ids)

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()

    def prune(self, existing_ids: Iterable[str]) -> None:
        """Drop every ID that no longer refers to a queued record."""
        existing = set(existing_ids)
        with self._lock:
            self._ids &= existing

    def ids(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._ids)
