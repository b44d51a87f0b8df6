"""Bounded-concurrency scheduler for the marking queue."""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum

from olympiad_marker.marking.cancellation import RunTokens
from olympiad_marker.marking.models import (
    ELIGIBLE_STATUSES,
    OUTCOME_STATUS,
    FailureClass,
    JobStatus,
    MarkingJob,
    MarkingScheme,
    OutcomeKind,
    WorkerOutcome,
)
from olympiad_marker.marking.repository import MarkingRepository
from olympiad_marker.marking.worker import STOP_REQUESTED, MarkingWorker
from olympiad_marker.storage.page_store import PageImageStore

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY_LIMIT = 3


class JobNotFoundError(LookupError):
    """Requested job is not in the queue."""


class JobBusyError(RuntimeError):
    """Operation is not allowed while the job (or queue) is being marked."""


class SchedulerState(str, Enum):
    """Coarse scheduler lifecycle for display."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(slots=True)
class SchedulerStatus:
    """Read-only summary of the scheduler and queue."""

    state: SchedulerState
    active_workers: int
    concurrency_limit: int
    counts: dict[JobStatus, int] = field(default_factory=dict)
    stop_reason: str | None = None

    @property
    def total(self) -> int:
        return sum(self.counts.values())


@dataclass(slots=True)
class _Dispatch:
    job: MarkingJob
    scheme: MarkingScheme
    tokens: RunTokens


@dataclass(slots=True)
class _PendingWrite:
    job: MarkingJob
    event_type: str
    details: dict[str, object]


class MarkingScheduler:
    """Single authority over which job runs on which worker slot.

    Slot accounting and every status transition into or out of ``running``
    happen under one lock; workers report back through
    :meth:`_on_checkpoint` and :meth:`_on_worker_done` and never change a
    job's status themselves.

    Status writes are queued under the lock in transition order and flushed
    to the repository after it is released, so checkpoints never wait on disk
    I/O done by the scheduler.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: MarkingRepository,
        worker: MarkingWorker,
        page_store: PageImageStore,
        scheme: MarkingScheme,
        concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
    ) -> None:
        if concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1.")
        self.repository = repository
        self.worker = worker
        self.page_store = page_store
        self.concurrency_limit = concurrency_limit
        self._scheme = scheme
        self._lock = threading.Lock()
        self._jobs: dict[str, MarkingJob] = {}
        self._active = 0
        self._accepting = False
        self._closed = False
        self._tokens = RunTokens()
        self._dispatched_this_run: set[str] = set()
        self._touched: set[str] = set()
        self._writes: deque[_PendingWrite] = deque()
        self._write_lock = threading.Lock()
        self._writing: str | None = None
        self._idle = threading.Event()
        self._idle.set()
        self._executor = ThreadPoolExecutor(
            max_workers=concurrency_limit,
            thread_name_prefix="marking-worker",
        )

    # -- queue ----------------------------------------------------------------

    def load(self, *, recover_interrupted: bool = True) -> int:
        """Rebuild the in-memory queue from the last durable snapshot.

        Only the process that is about to mark should recover interrupted
        ``running`` rows; read-only callers pass ``recover_interrupted=False``
        so a job being marked elsewhere keeps its status.
        """

        jobs = self.repository.load_queue(recover_interrupted=recover_interrupted)
        with self._lock:
            if self._active:
                raise JobBusyError("Cannot reload the queue while workers are active.")
            self._jobs = {job.job_id: job for job in jobs}
            self._touched = set()
        logger.info("Loaded %d job(s) from %s", len(jobs), self.repository.db_path)
        return len(jobs)

    def set_scheme(self, scheme: MarkingScheme) -> None:
        """Replace the paper context used for future dispatches."""

        with self._lock:
            self._scheme = scheme

    def enqueue(self, job: MarkingJob) -> MarkingJob:
        """Append a job to the end of the queue."""

        if job.status == JobStatus.RUNNING:
            raise ValueError("Only the scheduler may put a job into running.")
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Job already queued: {job.job_id}")
            job = replace(job, queue_position=self._next_position_locked())
            self.repository.insert_job(job)
            self._jobs[job.job_id] = job
            self._touched.add(job.job_id)
            dispatch = self._claim_locked() if self._can_dispatch_locked() else []
        logger.info(
            "Enqueued job %s (%s) at position %d",
            job.job_id,
            job.label,
            job.queue_position,
        )
        self._submit(dispatch)
        return job

    def purge(self, job_id: str) -> MarkingJob:
        """Delete a job, its results and its page images."""

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if job.status == JobStatus.RUNNING:
                raise JobBusyError(f"Job is being marked; stop the queue first: {job_id}")
            if not self._has_pending_write_locked(job_id):
                stored = self.repository.get_job(job_id=job_id)
                if stored is not None and stored.status == JobStatus.RUNNING:
                    raise JobBusyError(f"Job is being marked by another process: {job_id}")
            self.repository.delete_job(job_id=job_id)
            del self._jobs[job_id]
            self._touched.discard(job_id)
        self.page_store.delete(job_id)
        logger.info("Purged job %s", job_id)
        return job

    def purge_all(self, *, timeout: float | None = None) -> int:
        """Stop, wait for workers to drain, then delete every job and page image."""

        self.stop()
        if not self.wait_idle(timeout):
            raise JobBusyError("Workers did not drain before purge timeout.")
        self._flush_writes()
        with self._lock:
            if self._active:
                raise JobBusyError("Workers became active again during purge.")
            busy = self.repository.list_jobs(status=JobStatus.RUNNING)
            if busy:
                raise JobBusyError(
                    f"{len(busy)} job(s) are being marked by another process; "
                    "stop that run first.",
                )
            removed = len(self._jobs)
            self.repository.delete_all_jobs()
            self._jobs.clear()
            self._touched.clear()
        self.page_store.clear()
        logger.info("Purged all %d job(s)", removed)
        return removed

    def snapshot(self) -> list[MarkingJob]:
        """Immutable view of every job in queue order."""

        with self._lock:
            return sorted(self._jobs.values(), key=lambda job: job.queue_position)

    def get(self, job_id: str) -> MarkingJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    def status(self) -> SchedulerStatus:
        with self._lock:
            if self._accepting:
                state = SchedulerState.RUNNING
            elif self._active:
                state = SchedulerState.STOPPING
            else:
                state = SchedulerState.IDLE
            counts = Counter(job.status for job in self._jobs.values())
            return SchedulerStatus(
                state=state,
                active_workers=self._active,
                concurrency_limit=self.concurrency_limit,
                counts={status: counts.get(status, 0) for status in JobStatus},
                stop_reason=self._tokens.global_stop.reason or self._tokens.user_stop.reason,
            )

    # -- control --------------------------------------------------------------

    def start(self) -> bool:
        """Begin filling worker slots; returns False if already running."""

        with self._lock:
            if self._closed:
                raise RuntimeError("Scheduler has been shut down.")
            if self._accepting:
                return False
            self._tokens = RunTokens()
            self._dispatched_this_run = set()
            self._accepting = True
            dispatch = self._claim_locked()
            if self._active == 0:
                self._accepting = False
                self._idle.set()
        if dispatch:
            logger.info(
                "Marking started: dispatched %d job(s), limit %d",
                len(dispatch),
                self.concurrency_limit,
            )
        else:
            logger.info("Marking started: no eligible jobs")
        self._submit(dispatch)
        return True

    def stop(self) -> bool:
        """Ask in-flight workers to pause at their next part boundary."""

        with self._lock:
            if not self._accepting:
                return False
            self._accepting = False
            self._tokens.user_stop.set(STOP_REQUESTED)
            if self._active == 0:
                self._idle.set()
            active = self._active
        logger.info("Stop requested; %d worker(s) draining", active)
        return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no worker is active and nothing is being dispatched."""

        return self._idle.wait(timeout)

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        """Stop, optionally drain, persist the jobs this scheduler changed and release threads.

        Jobs that were only loaded are never written back, so a read-only
        caller can not overwrite progress made by another process.
        """

        self.stop()
        if wait:
            self.wait_idle(timeout)
        self._flush_writes()
        with self._lock:
            self._closed = True
            jobs = sorted(
                (self._jobs[job_id] for job_id in self._touched if job_id in self._jobs),
                key=lambda job: job.queue_position,
            )
        if jobs:
            try:
                self.repository.save_snapshot(jobs)
            except Exception:  # noqa: BLE001
                logger.exception("Final queue snapshot was not persisted")
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> MarkingScheduler:
        return self

    def __exit__(self, *_: object) -> None:
        self.shutdown()

    # -- worker callbacks -----------------------------------------------------

    def _run_worker(self, dispatch: _Dispatch) -> None:
        try:
            outcome = self.worker.run(
                dispatch.job,
                scheme=dispatch.scheme,
                tokens=dispatch.tokens,
                on_checkpoint=self._on_checkpoint,
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Worker crashed for job %s", dispatch.job.job_id)
            with self._lock:
                last_seen = self._jobs.get(dispatch.job.job_id, dispatch.job)
            outcome = WorkerOutcome(
                job=last_seen,
                kind=OutcomeKind.FAILED,
                failure_class=FailureClass.INTERNAL_ERROR,
                cause=f"Unexpected worker error: {error}",
            )
        self._on_worker_done(outcome, tokens=dispatch.tokens)

    def _on_checkpoint(self, job: MarkingJob) -> None:
        with self._lock:
            current = self._jobs.get(job.job_id)
            if current is None or current.status != JobStatus.RUNNING:
                return
            if job.cursor <= current.cursor:
                return
            self._jobs[job.job_id] = job

    def _on_worker_done(self, outcome: WorkerOutcome, *, tokens: RunTokens) -> None:
        with self._lock:
            self._active -= 1
            if outcome.job_id in self._jobs:
                final = outcome.job.with_status(
                    OUTCOME_STATUS[outcome.kind],
                    failure_class=outcome.failure_class,
                    error=outcome.cause,
                )
                self._jobs[outcome.job_id] = final
                self._queue_write_locked(
                    final,
                    event_type=outcome.kind.value,
                    details={
                        "parts_scored": outcome.parts_scored,
                        "failure_class": (
                            outcome.failure_class.value if outcome.failure_class else None
                        ),
                        "cause": outcome.cause,
                        **outcome.details,
                    },
                )
            if tokens is self._tokens and tokens.global_stop.is_set() and self._accepting:
                self._accepting = False
                logger.warning(
                    "Global stop raised (%s); no new jobs will start",
                    tokens.global_stop.reason,
                )
            dispatch = self._claim_locked() if self._can_dispatch_locked() else []
            drained = self._active == 0 and not dispatch
            if drained and self._accepting:
                self._accepting = False
                logger.info("Queue drained; scheduler idle")
        logger.info(
            "Job %s finished run: %s (%d part(s) scored)%s",
            outcome.job_id,
            outcome.kind.value,
            outcome.parts_scored,
            f" - {outcome.cause}" if outcome.cause else "",
        )
        self._submit(dispatch)
        if drained:
            # Idle is only signalled once the final status is on disk.
            with self._lock:
                if self._active == 0:
                    self._idle.set()

    # -- internals ------------------------------------------------------------

    def _can_dispatch_locked(self) -> bool:
        return self._accepting and not self._closed and not self._tokens.any_set()

    def _claim_locked(self) -> list[_Dispatch]:
        free = self.concurrency_limit - self._active
        if free <= 0:
            return []
        claimed: list[_Dispatch] = []
        for job in sorted(self._jobs.values(), key=lambda item: item.queue_position):
            if len(claimed) >= free:
                break
            if job.status not in ELIGIBLE_STATUSES or job.job_id in self._dispatched_this_run:
                continue
            running = job.with_status(JobStatus.RUNNING)
            self._jobs[job.job_id] = running
            self._active += 1
            self._dispatched_this_run.add(job.job_id)
            self._queue_write_locked(running, event_type="dispatched", details={})
            claimed.append(_Dispatch(job=running, scheme=self._scheme, tokens=self._tokens))
        if claimed:
            self._idle.clear()
        return claimed

    def _submit(self, dispatch: list[_Dispatch]) -> None:
        # A job is ``running`` on disk before its worker can checkpoint it.
        self._flush_writes()
        for item in dispatch:
            logger.debug("Dispatching job %s at cursor %d", item.job.job_id, item.job.cursor)
            self._executor.submit(self._run_worker, item)

    def _queue_write_locked(
        self,
        job: MarkingJob,
        *,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        self._touched.add(job.job_id)
        self._writes.append(_PendingWrite(job=job, event_type=event_type, details=details))

    def _has_pending_write_locked(self, job_id: str) -> bool:
        return job_id == self._writing or any(
            write.job.job_id == job_id for write in self._writes
        )

    def _flush_writes(self) -> None:
        """Write queued status changes in the order they were made."""

        with self._write_lock:
            while True:
                with self._lock:
                    self._writing = None
                    if not self._writes:
                        return
                    write = self._writes.popleft()
                    self._writing = write.job.job_id
                try:
                    self.repository.save_job(
                        write.job,
                        event_type=write.event_type,
                        details=write.details,
                    )
                except Exception:  # noqa: BLE001
                    logger.exception(
                        "Job %s: %s state was not persisted (%s)",
                        write.job.job_id,
                        write.job.status.value,
                        FailureClass.PERSISTENCE_ERROR.value,
                    )

    def _next_position_locked(self) -> int:
        in_memory = max((job.queue_position for job in self._jobs.values()), default=-1) + 1
        return max(in_memory, self.repository.next_queue_position())
