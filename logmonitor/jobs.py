"""In-memory async job queue with deduplication and bounded history."""

from __future__ import annotations

import enum
import json
import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Generic, TypeVar

T = TypeVar("T")

Runner = Callable[[threading.Event], Any]

_CANCELED_MESSAGE = "canceled"
_ZERO_TIME = datetime.min.replace(tzinfo=timezone.utc)


class JobError(Exception):
    """Base class for job manager errors."""


class JobNotFoundError(JobError, LookupError):
    """The requested job does not exist in history."""

    def __init__(self, message: str = "jobs: not found") -> None:
        super().__init__(message)


class QueueFullError(JobError):
    """The async queue is currently saturated."""

    def __init__(self, message: str = "jobs: queue is full") -> None:
        super().__init__(message)


class ShuttingDownError(JobError):
    """The manager no longer accepts new jobs."""

    def __init__(self, message: str = "jobs: shutting down") -> None:
        super().__init__(message)


class JobCanceledError(JobError):
    """Raised by a runner that stopped because cancellation was requested."""


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED)


@dataclass(frozen=True)
class Job:
    """Immutable snapshot of one job in history."""

    id: str
    job_type: str
    status: JobStatus
    created_at: datetime
    idempotency_key: str = ""
    fingerprint: str = ""
    server_id: str = ""
    log_file_id: str = ""
    error: str = ""
    result: str | None = None  # JSON text of the runner's result
    started_at: datetime | None = None
    finished_at: datetime | None = None


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    total: int
    offset: int
    limit: int


@dataclass(frozen=True)
class JobOptions:
    workers: int = 2
    queue_size: int = 128
    history_limit: int = 1000


@dataclass
class ListFilter:
    """Constraints for listing job history."""

    job_type: str = ""
    status: JobStatus | None = None
    server_id: str = ""
    log_file_id: str = ""
    q: str = ""
    has_error: bool | None = None
    sort: str = ""
    order: str = ""
    offset: int = 0
    limit: int = 0


@dataclass
class TaskSpec:
    """An async operation to queue; ``run`` receives the manager's cancel event."""

    job_type: str
    run: Runner
    idempotency_key: str = ""
    fingerprint: str = ""
    server_id: str = ""
    log_file_id: str = ""


@dataclass(frozen=True)
class _QueuedTask:
    job_id: str
    job_type: str
    run: Runner


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobManager:
    """Coordinates async execution, deduplication and job history."""

    def __init__(self, options: JobOptions | None = None, logger: logging.Logger | None = None) -> None:
        opts = options or JobOptions()
        self._options = JobOptions(
            workers=opts.workers if opts.workers > 0 else 2,
            queue_size=opts.queue_size if opts.queue_size > 0 else 128,
            history_limit=opts.history_limit if opts.history_limit > 0 else 1000,
        )
        self._logger = logger or logging.getLogger(__name__)
        self._cond = threading.Condition()
        self._jobs: dict[str, Job] = {}
        self._order: list[str] = []
        self._idempotency_keys: dict[str, str] = {}
        self._active_fingerprints: dict[str, str] = {}
        self._pending: deque[_QueuedTask] = deque()
        self._cancel = threading.Event()
        self._threads: list[threading.Thread] = []
        self._start_called = False
        self._shutdown_called = False
        self._workers_started = False
        self._shutting_down = False

    def start(self) -> None:
        """Launch worker threads; later calls do nothing."""
        with self._cond:
            if self._start_called:
                return
            self._start_called = True
            self._workers_started = True
            self._threads = [
                threading.Thread(target=self._worker, args=(index + 1,), name=f"job-worker-{index + 1}", daemon=True)
                for index in range(self._options.workers)
            ]
            threads = list(self._threads)
        for thread in threads:
            thread.start()

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting jobs, cancel running ones and wait for workers to exit.

        Raises TimeoutError when workers are still busy after ``timeout`` seconds.
        """
        with self._cond:
            if not self._shutdown_called:
                self._shutdown_called = True
                self._shutting_down = True
                if self._start_called:
                    self._cancel.set()
                self._cond.notify_all()
            threads = list(self._threads)

        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in threads:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
            if thread.is_alive():
                raise TimeoutError("jobs: shutdown timed out")

        with self._cond:
            self._workers_started = False

    def started(self) -> bool:
        """Report whether workers run and new jobs are still accepted."""
        with self._cond:
            return self._workers_started and not self._shutting_down

    def submit(self, spec: TaskSpec) -> tuple[Job, bool]:
        """Queue a job, or return an existing one and ``True`` when deduplication matches."""
        now = _utcnow()
        key = spec.idempotency_key.strip()
        fingerprint = spec.fingerprint.strip()

        with self._cond:
            if self._shutting_down:
                raise ShuttingDownError()
            if key:
                job_id = self._idempotency_keys.get(key)
                if job_id is not None:
                    job = self._jobs.get(job_id)
                    if job is not None:
                        return job, True
                    del self._idempotency_keys[key]
            if fingerprint:
                job_id = self._active_fingerprints.get(fingerprint)
                if job_id is not None:
                    job = self._jobs.get(job_id)
                    if job is not None:
                        if key:
                            self._idempotency_keys[key] = job_id
                        return job, True
                    del self._active_fingerprints[fingerprint]

            if len(self._pending) >= self._options.queue_size:
                raise QueueFullError()

            job = Job(
                id=str(uuid.uuid4()),
                job_type=spec.job_type,
                status=JobStatus.QUEUED,
                created_at=now,
                idempotency_key=key,
                fingerprint=fingerprint,
                server_id=spec.server_id,
                log_file_id=spec.log_file_id,
            )
            self._pending.append(_QueuedTask(job_id=job.id, job_type=job.job_type, run=spec.run))
            self._jobs[job.id] = job
            self._order.append(job.id)
            if key:
                self._idempotency_keys[key] = job.id
            if fingerprint:
                self._active_fingerprints[fingerprint] = job.id
            self._cond.notify()
            return job, False

    def get_job(self, job_id: str) -> Job:
        """Return one stored job snapshot."""
        with self._cond:
            job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError()
        return job

    def list_jobs(self, filter: ListFilter | None = None) -> list[Job]:
        """Return filtered job history, newest first by default."""
        return self.list_jobs_page(filter).items

    def list_jobs_page(self, filter: ListFilter | None = None) -> Page[Job]:
        """Return filtered job history with total count and pagination metadata."""
        flt = filter or ListFilter()
        with self._cond:
            matches = [
                job
                for job in (self._jobs.get(job_id) for job_id in reversed(self._order))
                if job is not None and _matches_filter(job, flt)
            ]
        matches = _sort_jobs(matches, flt.sort, flt.order)

        total = len(matches)
        if flt.offset >= total:
            return Page(items=[], total=total, offset=flt.offset, limit=flt.limit)
        start = max(flt.offset, 0)
        end = total
        if flt.limit > 0 and start + flt.limit < end:
            end = start + flt.limit
        return Page(items=matches[start:end], total=total, offset=flt.offset, limit=flt.limit)

    def _worker(self, worker_id: int) -> None:
        while True:
            with self._cond:
                while not self._pending and not self._shutting_down:
                    self._cond.wait()
                if not self._pending:
                    return
                task = self._pending.popleft()

            if self._cancel.is_set():
                self._finish(task.job_id, status=JobStatus.CANCELED, error=_CANCELED_MESSAGE)
                continue

            self._update(task.job_id, status=JobStatus.RUNNING, started_at=_utcnow(), finished_at=None)
            try:
                result = task.run(self._cancel)
            except JobCanceledError:
                self._finish(task.job_id, status=JobStatus.CANCELED, error=_CANCELED_MESSAGE)
            except Exception as exc:
                self._finish(task.job_id, status=JobStatus.FAILED, error=str(exc) or type(exc).__name__)
            else:
                self._finish(task.job_id, status=JobStatus.SUCCEEDED, error="", result=_encode_result(result))

            self._logger.debug("job processed worker=%d job_id=%s type=%s", worker_id, task.job_id, task.job_type)

    def _update(self, job_id: str, **changes: Any) -> None:
        with self._cond:
            job = self._jobs.get(job_id)
            if job is not None:
                self._jobs[job_id] = replace(job, **changes)

    def _finish(self, job_id: str, **changes: Any) -> None:
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job = replace(job, finished_at=_utcnow(), **changes)
            self._jobs[job_id] = job
            if job.fingerprint and self._active_fingerprints.get(job.fingerprint) == job.id:
                del self._active_fingerprints[job.fingerprint]
            self._trim_history_locked()

    def _trim_history_locked(self) -> None:
        while len(self._jobs) > self._options.history_limit:
            victim = next(
                (
                    job_id
                    for job_id in self._order
                    if job_id in self._jobs and self._jobs[job_id].status.terminal
                ),
                None,
            )
            if victim is None:
                return
            job = self._jobs.pop(victim)
            if job.idempotency_key and self._idempotency_keys.get(job.idempotency_key) == victim:
                del self._idempotency_keys[job.idempotency_key]
            self._order.remove(victim)


def _encode_result(result: Any) -> str | None:
    if result is None:
        return None
    try:
        return json.dumps(result)
    except (TypeError, ValueError):
        return None


def _matches_filter(job: Job, flt: ListFilter) -> bool:
    if flt.job_type and job.job_type != flt.job_type:
        return False
    if flt.status and job.status != flt.status:
        return False
    if flt.server_id and job.server_id != flt.server_id:
        return False
    if flt.log_file_id and job.log_file_id != flt.log_file_id:
        return False
    if flt.has_error is not None and bool(job.error) != flt.has_error:
        return False
    return _matches_query(job, flt.q)


def _matches_query(job: Job, query: str) -> bool:
    query = query.strip().lower()
    if not query:
        return True
    values = (
        job.id,
        job.job_type,
        job.status.value,
        job.server_id,
        job.log_file_id,
        job.error,
        job.idempotency_key,
        job.fingerprint,
    )
    return any(query in value.lower() for value in values)


def _sort_jobs(items: list[Job], sort_by: str, order: str) -> list[Job]:
    if sort_by == "status":
        key: Callable[[Job], Any] = lambda job: (job.status.value, job.created_at)
    elif sort_by == "finished_at":
        key = lambda job: job.finished_at or _ZERO_TIME
    else:
        key = lambda job: job.created_at
    return sorted(items, key=key, reverse=order.lower() != "asc")