"""Upload manager: the queue's consumer-facing surface.

Owns the queue store, selection set, error log, executor and scheduler, and
runs the scheduler's event loop in a daemon thread. Public methods may be
called from any thread (Flask request handlers); every mutation is marshalled
onto the loop so the store sees one serialized mutation path.
"""

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from dropqueue.config import get_settings
from dropqueue.services import dedup
from dropqueue.services.error_log import ErrorLog
from dropqueue.services.log_service import get_log_service
from dropqueue.services.models import FileRef, JobRecord, JobStatus
from dropqueue.services.queue_store import QueueSnapshot, QueueStore
from dropqueue.services.scheduler import Executor, Scheduler
from dropqueue.services.selection import SelectionSet
from dropqueue.services.upload_executor import UploadExecutor

logger = logging.getLogger(__name__)

# Seconds a caller waits for the loop to run a command
CALL_TIMEOUT_SECONDS = 30.0

T = TypeVar("T")
SnapshotCallback = Callable[[dict[str, Any]], None]


@dataclass
class EnqueueResult:
    """Records created by one drop, plus the files the dedup filter dropped."""

    accepted: list[JobRecord] = field(default_factory=list)
    dropped: list[FileRef] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": [job.to_dict() for job in self.accepted],
            "accepted_count": len(self.accepted),
            "duplicates_dropped": len(self.dropped),
            "duplicate_filenames": [f.name for f in self.dropped],
            "missing_paths": self.missing,
        }


class UploadManager:
    """Manages the upload queue for one page session."""

    def __init__(
        self,
        executor: Executor | None = None,
        ceiling: int | None = None,
        pass_delay: float | None = None,
    ) -> None:
        settings = get_settings()
        self.store = QueueStore()
        self.selection = SelectionSet()
        self.errors = ErrorLog()
        self.executor = executor or UploadExecutor(
            settings.remote_base_url, settings.request_timeout_seconds
        )
        self.scheduler = Scheduler(
            self.store,
            self.executor,
            self.errors,
            ceiling=ceiling if ceiling is not None else settings.max_concurrent_uploads,
            pass_delay=pass_delay if pass_delay is not None else settings.pass_delay_seconds,
        )
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._subscribers: list[SnapshotCallback] = []
        self.store.subscribe(self._on_queue_changed)
        self.scheduler.subscribe(self._on_scheduler_changed)

    # -- lifecycle ---------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the scheduler loop thread (idempotent)."""
        with self._lock:
            if self.started:
                return
            loop = asyncio.new_event_loop()
            thread = threading.Thread(
                target=loop.run_forever, name="upload-scheduler", daemon=True
            )
            thread.start()
            self._loop = loop
            self._thread = thread
        asyncio.run_coroutine_threadsafe(self.scheduler.start(), loop).result(
            CALL_TIMEOUT_SECONDS
        )

    def shutdown(self) -> None:
        """Stop the scheduler, close the HTTP client and join the loop thread."""
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
        if loop is None or thread is None:
            return

        async def stop() -> None:
            await self.scheduler.stop()
            aclose = getattr(self.executor, "aclose", None)
            if aclose is not None:
                await aclose()

        try:
            asyncio.run_coroutine_threadsafe(stop(), loop).result(CALL_TIMEOUT_SECONDS)
        finally:
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=CALL_TIMEOUT_SECONDS)
            loop.close()

    def wait_idle(
        self, timeout: float = CALL_TIMEOUT_SECONDS, include_transfers: bool = True
    ) -> None:
        """Block until the scheduler has no outstanding work.

        Args:
            timeout: Seconds to wait before raising TimeoutError
            include_transfers: Also wait for in-flight transfers to resolve
        """
        loop = self._ensure_loop()
        asyncio.run_coroutine_threadsafe(
            self.scheduler.wait_idle(include_transfers), loop
        ).result(timeout)

    def _ensure_loop(self) -> asyncio.AbstractEventLoop:
        if not self.started:
            self.start()
        assert self._loop is not None
        return self._loop

    def _on_loop_thread(self) -> bool:
        return self._thread is not None and self._thread is threading.current_thread()

    def _call(self, fn: Callable[..., T], *args: Any) -> T:
        """Run ``fn(*args)`` on the scheduler loop and return its result."""
        if self._on_loop_thread():
            return fn(*args)
        loop = self._ensure_loop()

        async def invoke() -> T:
            return fn(*args)

        return asyncio.run_coroutine_threadsafe(invoke(), loop).result(CALL_TIMEOUT_SECONDS)

    # -- commands ----------------------------------------------------------

    def enqueue(self, files: Iterable[FileRef]) -> EnqueueResult:
        """Add dropped files to the queue, skipping known identity keys."""
        return self._call(self._enqueue, list(files))

    def enqueue_paths(self, file_paths: Iterable[str]) -> EnqueueResult:
        """Enqueue local files by path; missing paths are reported, not queued."""
        files: list[FileRef] = []
        missing: list[str] = []
        for path_str in file_paths:
            try:
                files.append(FileRef.from_path(path_str))
            except FileNotFoundError:
                missing.append(path_str)
        result = self.enqueue(files)
        result.missing = missing
        return result

    def retry(self, job_id: str) -> bool:
        """Re-queue one failed job as a new attempt."""
        return self._call(self._retry, job_id)

    def retry_selected(self) -> int:
        """Re-queue every selected job that is failed; others are untouched."""
        return self._call(self._retry_selected)

    def remove(self, job_id: str) -> bool:
        """Remove one job whatever its status; an in-flight transfer keeps running."""
        return self._call(self._remove, job_id)

    def remove_selected(self) -> int:
        """Remove every selected job."""
        return self._call(self._remove_selected)

    def toggle_selection(self, job_id: str) -> bool | None:
        """Flip selection of one job.

        Returns:
            The new membership, or None if the job does not exist
        """
        return self._call(self._toggle_selection, job_id)

    def clear_selection(self) -> None:
        self._call(self._clear_selection)

    def dismiss_errors(self) -> int:
        """Clear the aggregate error banner."""
        return self._call(self._dismiss_errors)

    # -- queries -----------------------------------------------------------

    def get_job(self, job_id: str) -> JobRecord | None:
        """Get a job by ID."""
        return self.store.get(job_id)

    @property
    def active_count(self) -> int:
        return self.scheduler.active_count

    def snapshot(self) -> dict[str, Any]:
        """Consistent view of {jobs, active count, error log} for the UI.

        Built on the scheduler loop so it never sees a pass half applied.
        """
        if not self.started:
            return self._build_snapshot()
        return self._call(self._build_snapshot)

    def _build_snapshot(self, queue: QueueSnapshot | None = None) -> dict[str, Any]:
        if queue is None:
            queue = self.store.snapshot()
        selected = self.selection.ids()
        return {
            "version": queue.version,
            "jobs": [job.to_dict() | {"selected": job.id in selected} for job in queue],
            "counts": queue.counts(),
            "active_count": self.scheduler.active_count,
            "ceiling": self.scheduler.ceiling,
            "errors": self.errors.entries(),
            "selected": sorted(selected),
        }

    def subscribe(self, callback: SnapshotCallback) -> None:
        """Register a callback receiving a snapshot dict after every change."""
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: SnapshotCallback) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    # -- loop-side implementations -----------------------------------------

    def _enqueue(self, files: list[FileRef]) -> EnqueueResult:
        accepted, dropped = dedup.accept(files, self.store.snapshot())
        self.store.append(accepted)

        log = get_log_service()
        if accepted:
            log.info(
                "queue",
                "jobs_enqueued",
                f"Queued {len(accepted)} files",
                {
                    "job_ids": [job.id for job in accepted],
                    "total_bytes": sum(job.file.size for job in accepted),
                },
            )
        for file in dropped:
            log.info(
                "queue",
                "duplicate_dropped",
                f"Skipped duplicate: {file.name}",
                {"filename": file.name, "file_size": file.size},
            )
        return EnqueueResult(accepted=accepted, dropped=dropped)

    def _requeue(self, job: JobRecord) -> bool:
        if job.status is not JobStatus.FAILED:
            return False
        updated = self.store.update_status(
            job.id,
            status=JobStatus.QUEUED,
            progress=0,
            error=None,
            result=None,
            attempt=job.attempt + 1,
            started_at=None,
            completed_at=None,
        )
        if updated is None:
            return False
        get_log_service().info(
            "queue",
            "job_retried",
            f"Retrying {job.filename}",
            {"job_id": job.id, "filename": job.filename, "attempt": updated.attempt},
        )
        return True

    def _retry(self, job_id: str) -> bool:
        job = self.store.get(job_id)
        return job is not None and self._requeue(job)

    def _retry_selected(self) -> int:
        selected = self.selection.ids()
        return sum(
            1 for job in self.store.snapshot() if job.id in selected and self._requeue(job)
        )

    def _log_removed(self, removed: list[JobRecord]) -> None:
        if not removed:
            return
        get_log_service().info(
            "queue",
            "jobs_removed",
            f"Removed {len(removed)} files from the queue",
            {
                "job_ids": [job.id for job in removed],
                "in_flight": [job.id for job in removed if job.status is JobStatus.UPLOADING],
            },
        )

    def _remove(self, job_id: str) -> bool:
        removed = self.store.remove(job_id)
        if removed is None:
            return False
        self._log_removed([removed])
        return True

    def _remove_selected(self) -> int:
        selected = self.selection.ids()
        removed = self.store.remove_where(lambda job: job.id in selected)
        self._log_removed(removed)
        return len(removed)

    def _toggle_selection(self, job_id: str) -> bool | None:
        if self.store.get(job_id) is None:
            return None
        selected = self.selection.toggle(job_id)
        self._broadcast(self._build_snapshot())
        return selected

    def _clear_selection(self) -> None:
        self.selection.clear()
        self._broadcast(self._build_snapshot())

    def _dismiss_errors(self) -> int:
        count = self.errors.dismiss()
        self._broadcast(self._build_snapshot())
        return count

    def _on_queue_changed(self, queue: QueueSnapshot) -> None:
        self.selection.prune(queue.ids())
        self._broadcast(self._build_snapshot(queue))

    def _on_scheduler_changed(self) -> None:
        self._broadcast(self._build_snapshot())

    def _broadcast(self, data: dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(data)
            except Exception:
                logger.warning("Snapshot subscriber failed", exc_info=True)


# Global upload manager instance
_upload_manager: UploadManager | None = None
_manager_lock = threading.Lock()


def get_upload_manager() -> UploadManager:
    """Get the global upload manager instance."""
    global _upload_manager
    with _manager_lock:
        if _upload_manager is None:
            _upload_manager = UploadManager()
        return _upload_manager


def reset_upload_manager() -> None:
    """Shut down and discard the global instance."""
    global _upload_manager
    with _manager_lock:
        manager, _upload_manager = _upload_manager, None
    if manager is not None:
        manager.shutdown()
