"""Admission-control scheduler for the upload queue.

The scheduler runs on one asyncio event loop. A single consumer coroutine
drains an event queue (wake requests and upload outcomes), so scheduling
passes never overlap. A pass moves up to ``ceiling - active_count`` queued
jobs, oldest first, to uploading and dispatches one executor task per job,
all without suspending. Outcomes come back as events and are applied by the
consumer, which then runs the next pass.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from dropqueue.services.error_log import ErrorLog
from dropqueue.services.log_service import get_log_service
from dropqueue.services.models import JobRecord, JobStatus, Outcome
from dropqueue.services.queue_store import QueueSnapshot, QueueStore
from dropqueue.services.upload_executor import GENERIC_FAILURE_MESSAGE, PercentCallback

logger = logging.getLogger(__name__)

DEFAULT_CEILING = 2
DEFAULT_PASS_DELAY_SECONDS = 0.3

StateListener = Callable[[], None]


class Executor(Protocol):
    async def run(
        self, job: JobRecord, on_progress: PercentCallback | None = None
    ) -> Outcome: ...


class SchedulerState(Enum):
    """Whether an admission pass is currently executing."""

    IDLE = "idle"
    RUNNING = "running"


class EventType(Enum):
    WAKE = "wake"
    OUTCOME = "outcome"
    STOP = "stop"


@dataclass(frozen=True)
class SchedulerEvent:
    """One entry of the scheduler's inbox."""

    type: EventType
    reason: str = ""
    job_id: str | None = None
    filename: str = ""
    outcome: Outcome | None = None


class Scheduler:
    """Bounds concurrent uploads and routes executor outcomes to the store.

    ``active_count`` and ``state`` are owned by the scheduler and only change
    on its event loop.
    """

    def __init__(
        self,
        store: QueueStore,
        executor: Executor,
        error_log: ErrorLog,
        ceiling: int = DEFAULT_CEILING,
        pass_delay: float = DEFAULT_PASS_DELAY_SECONDS,
    ) -> None:
        if ceiling < 1:
            raise ValueError("ceiling must be at least 1")
        self.store = store
        self.executor = executor
        self.error_log = error_log
        self.ceiling = ceiling
        self.pass_delay = pass_delay
        self.state = SchedulerState.IDLE
        self.passes = 0
        self._active_count = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._events: asyncio.Queue[SchedulerEvent] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._followups: set[asyncio.TimerHandle] = set()
        self._wake_pending = False
        self._listeners: list[StateListener] = []

    @property
    def active_count(self) -> int:
        """Number of admitted transfers that have not produced an outcome yet."""
        return self._active_count

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def subscribe(self, listener: StateListener) -> None:
        """Register a callback for scheduler-owned changes the store does not publish.

        Fired when an outcome frees a slot or adds an error log entry without
        touching any record, i.e. for jobs removed while uploading.
        """
        self._listeners.append(listener)

    def unsubscribe(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def start(self) -> None:
        """Start consuming events on the running loop and request the first pass."""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._events = asyncio.Queue()
        self._consumer = self._loop.create_task(self._consume(), name="upload-scheduler")
        self.store.subscribe(self._on_store_changed)
        self.wake("mount")

    async def stop(self) -> None:
        """Stop the consumer and abandon in-flight transfers."""
        if not self.running or self._events is None:
            return
        self.store.unsubscribe(self._on_store_changed)
        for handle in self._followups:
            handle.cancel()
        self._followups.clear()
        self._events.put_nowait(SchedulerEvent(EventType.STOP, reason="stop"))
        assert self._consumer is not None
        await self._consumer
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._consumer = None

    def wake(self, reason: str) -> None:
        """Request a scheduling pass; safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._post_wake(reason)
        else:
            loop.call_soon_threadsafe(self._post_wake, reason)

    async def wait_idle(self, include_transfers: bool = True) -> None:
        """Wait until no event or follow-up pass is outstanding.

        Args:
            include_transfers: Also wait for every in-flight transfer to finish
        """
        assert self._events is not None
        while True:
            await self._events.join()
            if self._followups:
                await asyncio.sleep(self.pass_delay or 0)
                continue
            if include_transfers and self._tasks:
                await asyncio.wait(set(self._tasks))
                continue
            await asyncio.sleep(0)
            if self._events.empty() and not self._followups:
                if not include_transfers or not self._tasks:
                    return

    def _on_store_changed(self, snapshot: QueueSnapshot) -> None:
        self.wake("queue_changed")

    def _post_wake(self, reason: str) -> None:
        # Pending wakes collapse into one; the pass reads the latest snapshot.
        if self._wake_pending or self._events is None:
            return
        self._wake_pending = True
        self._events.put_nowait(SchedulerEvent(EventType.WAKE, reason=reason))

    async def _consume(self) -> None:
        assert self._events is not None
        while True:
            event = await self._events.get()
            try:
                if event.type is EventType.STOP:
                    return
                if event.type is EventType.WAKE:
                    self._wake_pending = False
                elif event.type is EventType.OUTCOME:
                    self._apply_outcome(event)
                self._run_pass()
            except Exception:
                logger.exception("Scheduler failed to handle %s event", event.type.value)
            finally:
                self._events.task_done()

    def _run_pass(self) -> int:
        """Admit queued jobs into free slots and dispatch them.

        Returns:
            Number of jobs admitted
        """
        if self.state is SchedulerState.RUNNING:
            return 0
        self.state = SchedulerState.RUNNING
        try:
            self.passes += 1
            available = self.ceiling - self._active_count
            if available <= 0:
                return 0

            batch = self.store.snapshot().with_status(JobStatus.QUEUED)[:available]
            if not batch:
                return 0

            # Every job is marked uploading before any transfer starts. The slot is
            # taken first so each published snapshot counts it.
            now = datetime.now(UTC)
            admitted: list[JobRecord] = []
            for job in batch:
                self._active_count += 1
                updated = self.store.update_status(
                    job.id,
                    status=JobStatus.UPLOADING,
                    progress=0,
                    started_at=now,
                    completed_at=None,
                )
                if updated is None:
                    self._active_count -= 1
                else:
                    admitted.append(updated)

            log = get_log_service()
            for job in admitted:
                log.info(
                    "upload",
                    "file_upload_started",
                    f"Uploading {job.filename}",
                    {
                        "job_id": job.id,
                        "filename": job.filename,
                        "file_size": job.file.size,
                        "attempt": job.attempt,
                        "active_count": self._active_count,
                    },
                )
                self._dispatch(job)
            return len(admitted)
        finally:
            self.state = SchedulerState.IDLE

    def _dispatch(self, job: JobRecord) -> None:
        assert self._loop is not None
        task = self._loop.create_task(self._execute(job), name=f"upload-{job.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, job: JobRecord) -> None:
        def on_progress(percent: int) -> None:
            self.store.update_status(job.id, progress=percent)

        try:
            outcome = await self.executor.run(job, on_progress)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The executor contract forbids this; keep slot accounting intact anyway.
            logger.exception("Executor raised for job %s", job.id)
            outcome = Outcome.failure(job.attempt, str(e) or GENERIC_FAILURE_MESSAGE, "unknown")

        assert self._events is not None
        self._events.put_nowait(
            SchedulerEvent(
                EventType.OUTCOME,
                reason="outcome",
                job_id=job.id,
                filename=job.filename,
                outcome=outcome,
            )
        )

    def _apply_outcome(self, event: SchedulerEvent) -> None:
        outcome = event.outcome
        assert outcome is not None and event.job_id is not None
        self._active_count = max(0, self._active_count - 1)

        if outcome.failed:
            self.error_log.append(f"Failed to upload {event.filename}: {outcome.error}")

        job = self.store.get(event.job_id)
        if job is None or job.status is not JobStatus.UPLOADING or job.attempt != outcome.attempt:
            get_log_service().warning(
                "queue",
                "stale_outcome_ignored",
                f"Ignored outcome for {event.filename}: job no longer uploading",
                {
                    "job_id": event.job_id,
                    "filename": event.filename,
                    "outcome": outcome.status.value,
                    "removed": job is None,
                },
            )
            self._notify_changed()
        elif outcome.failed:
            self.store.update_status(
                job.id,
                status=JobStatus.FAILED,
                error=outcome.error,
                result=None,
                history=job.history + (outcome,),
                completed_at=outcome.finished_at,
            )
        else:
            self.store.update_status(
                job.id,
                status=JobStatus.COMPLETED,
                progress=100,
                error=None,
                result=outcome.result,
                history=job.history + (outcome,),
                completed_at=outcome.finished_at,
            )

        if outcome.failed or self.store.snapshot().count(JobStatus.QUEUED):
            self._schedule_followup()

    def _notify_changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.warning("Scheduler listener failed", exc_info=True)

    def _schedule_followup(self) -> None:
        assert self._loop is not None
        handle: asyncio.TimerHandle | None = None

        def fire() -> None:
            if handle is not None:
                self._followups.discard(handle)
            self._post_wake("followup")

        handle = self._loop.call_later(self.pass_delay, fire)
        self._followups.add(handle)
