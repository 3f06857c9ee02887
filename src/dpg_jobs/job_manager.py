"""
Background job execution and status tracking.

This module manages the lifecycle of every externally triggered mutation:
- Job status creation (synchronous, so callers get an id immediately)
- Asynchronous execution on a thread pool
- Ordered info/error/fatal event logging
- A recovery boundary that turns any unexpected failure into a terminal
  job status
- Per-unit mutual exclusion, so two mutations never touch one unit at once

Job status transitions are ``running -> finished`` or ``running -> failure``;
once terminal a job never changes again.
"""

from __future__ import annotations

import logging
import sqlite3
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Union

from .database import RecordStore
from .errors import MutationError
from .models import EventLevel, JobDetail, JobEvent, JobStatus, JobSummary
from .records import JobEventRecord, JobStatusRecord

logger = logging.getLogger(__name__)


def _to_summary(record: JobStatusRecord) -> JobSummary:
    return JobSummary(
        id=record.id,
        name=record.name,
        originator_type=record.originator_type,
        originator_id=record.originator_id,
        status=JobStatus(record.status),
        failures=record.failures,
        error=record.error or None,
        started_at=record.started_at,
        ended_at=record.ended_at,
    )


class JobLog:
    """
    Handle a running job uses to report progress.

    Every line is persisted as a job event and mirrored to the process
    logger. ``fatal`` and ``done`` are terminal; after either, further
    terminal calls are ignored so the first outcome sticks.

    Attributes:
        record: The persisted job status record
    """

    def __init__(self, store: RecordStore, record: JobStatusRecord) -> None:
        self.store = store
        self.record = record
        self._lock = Lock()

    @property
    def id(self) -> int:
        return self.record.id

    @property
    def terminal(self) -> bool:
        return self.record.ended_at is not None

    def _event(self, level: EventLevel, text: str) -> None:
        try:
            self.store.create(JobEventRecord(job_status_id=self.record.id, level=int(level), text=text, created_at=datetime.utcnow()))
        except sqlite3.Error as exc:
            logger.error(f"unable to log job {self.record.id} {level.name.lower()} event [{text}]: {exc}")

    def info(self, text: str) -> None:
        logger.info(f"[job {self.record.id} info]: {text}")
        self._event(EventLevel.INFO, text)

    def warning(self, text: str) -> None:
        logger.warning(f"[job {self.record.id} warning]: {text}")
        self._event(EventLevel.WARNING, text)

    def error(self, text: str) -> None:
        """Log a per-item failure and bump the job's failure count."""
        logger.error(f"[job {self.record.id} error]: {text}")
        self._event(EventLevel.ERROR, text)
        with self._lock:
            self.record.failures += 1
            try:
                self.store.update_fields(self.record, "failures")
            except (sqlite3.Error, LookupError) as exc:
                logger.error(f"unable to update job {self.record.id} failure count: {exc}")

    def fatal(self, text: str) -> None:
        """Log a fatal failure and mark the job terminal with status failure."""
        with self._lock:
            if self.terminal:
                logger.warning(f"[job {self.record.id}] already ended; ignoring fatal: {text}")
                return
            logger.error(f"[job {self.record.id} fatal]: {text}")
            self._event(EventLevel.FATAL, text)
            self.record.status = JobStatus.FAILED.value
            self.record.error = text
            self.record.ended_at = datetime.utcnow()
            self.store.update_fields(self.record, "status", "error", "ended_at")

    def done(self) -> None:
        """Mark the job finished unless it already ended."""
        with self._lock:
            if self.terminal:
                return
            self._event(EventLevel.INFO, "job finished")
            self.record.status = JobStatus.DONE.value
            self.record.ended_at = datetime.utcnow()
            self.store.update_fields(self.record, "status", "ended_at")
            logger.info(f"[job {self.record.id} finished] {self.record.name}")


@dataclass
class _UnitLock:
    lock: Lock
    users: int = 0


class UnitLocks:
    """
    One mutual-exclusion token per unit.

    A token exists only while some job holds or waits for it. Jobs that
    touch several units take their tokens in ascending unit id order.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[int, _UnitLock] = {}

    def _checkout(self, unit_id: int) -> Lock:
        with self._guard:
            entry = self._locks.get(unit_id)
            if entry is None:
                entry = self._locks[unit_id] = _UnitLock(Lock())
            entry.users += 1
            return entry.lock

    def _checkin(self, unit_id: int) -> None:
        with self._guard:
            entry = self._locks[unit_id]
            entry.lock.release()
            entry.users -= 1
            if entry.users == 0:
                del self._locks[unit_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, unit_ids: Union[int, Iterable[int], None], job: JobLog) -> Iterator[None]:
        if unit_ids is None:
            ordered: List[int] = []
        elif isinstance(unit_ids, int):
            ordered = [unit_ids]
        else:
            ordered = sorted(set(unit_ids))
        held: List[int] = []
        try:
            for unit_id in ordered:
                lock = self._checkout(unit_id)
                if not lock.acquire(blocking=False):
                    job.info(f"Waiting for another job on unit {unit_id} to finish")
                    lock.acquire()
                held.append(unit_id)
            yield
        finally:
            for unit_id in reversed(held):
                self._checkin(unit_id)


class JobManager:
    """
    Central coordinator for job lifecycle management.

    Mutation bodies are plain callables taking the job log as their first
    argument. The manager creates the job status synchronously, submits the
    body to a thread pool and guarantees the job reaches a terminal status
    whatever the body does.

    Thread Safety:
        Job records are persisted through the record store; the in-memory
        futures map is protected by a lock.

    Attributes:
        store: Record store holding job statuses and events
    """

    def __init__(self, store: RecordStore, max_workers: int = 1) -> None:
        """
        Initialize the job manager.

        Args:
            store: Record store for job statuses and events
            max_workers: Number of concurrent background jobs (default: 1)
        """
        self.store = store
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dpg-job")
        self._futures: Dict[int, Future] = {}
        self._lock = Lock()
        self.unit_locks = UnitLocks()

    def create_job(self, name: str, originator_type: str, originator_id: int) -> JobLog:
        """
        Persist a new running job status.

        Args:
            name: Job kind, e.g. "AddMasterFiles"
            originator_type: Subject type, "Unit" or "MasterFile"
            originator_id: Subject id

        Returns:
            JobLog bound to the new job
        """
        logger.info(f"create job status {name} {originator_type} {originator_id}")
        record = JobStatusRecord(
            name=name,
            originator_type=originator_type,
            originator_id=originator_id,
            status=JobStatus.RUNNING.value,
            started_at=datetime.utcnow(),
        )
        self.store.create(record)
        return JobLog(self.store, record)

    def submit(
        self, job: JobLog, body: Callable[..., Any], *args: Any, unit_id: Optional[int] = None, lock_units: Sequence[int] = ()
    ) -> JobSummary:
        """
        Run a mutation body in the background.

        Args:
            job: Job created with :meth:`create_job`
            body: Callable invoked as ``body(job, *args)``
            *args: Extra arguments for the body
            unit_id: Unit to lock for the duration of the body, if any
            lock_units: Further units the body reads or changes; locked too

        Returns:
            Summary of the (still running) job
        """
        units = ([unit_id] if unit_id is not None else []) + list(lock_units)
        future = self._executor.submit(self._run, job, body, args, units)
        with self._lock:
            self._futures[job.id] = future
        return _to_summary(job.record)

    def start(
        self,
        name: str,
        originator_type: str,
        originator_id: int,
        body: Callable[..., Any],
        *args: Any,
        unit_id: Optional[int] = None,
        lock_units: Sequence[int] = (),
    ) -> JobSummary:
        """Create a job and submit its body in one step."""
        job = self.create_job(name, originator_type, originator_id)
        return self.submit(job, body, *args, unit_id=unit_id, lock_units=lock_units)

    def _run(self, job: JobLog, body: Callable[..., Any], args: tuple, units: List[int]) -> None:
        """
        Execute a mutation body (runs in a background thread).

        Validation and precondition errors become a fatal job event with
        their message; anything else is logged with its stack trace. Either
        way the job ends terminal and the worker thread survives.
        """
        try:
            with self.unit_locks.hold(units, job):
                body(job, *args)
            job.done()
        except MutationError as exc:
            job.fatal(str(exc))
        except Exception as exc:
            logger.exception(f"job {job.id} {job.record.name} crashed")
            job.fatal(f"Unexpected failure: {exc}\n{traceback.format_exc()}")

    def wait(self, job_id: int, timeout: Optional[float] = None) -> Optional[JobDetail]:
        """Block until a submitted job's body returns, then return its detail."""
        with self._lock:
            future = self._futures.get(job_id)
        if future is not None:
            future.result(timeout=timeout)
            with self._lock:
                self._futures.pop(job_id, None)
        return self.get_job(job_id)

    def get_job(self, job_id: int) -> Optional[JobDetail]:
        """
        Get detailed information about a job.

        Returns:
            JobDetail with events oldest first, or None if not found
        """
        record = self.store.get(JobStatusRecord, job_id)
        if record is None:
            return None
        events = [
            JobEvent(timestamp=event.created_at, level=EventLevel(event.level), message=event.text)
            for event in self.store.query(JobEventRecord, job_status_id=job_id)
        ]
        return JobDetail(**_to_summary(record).model_dump(), events=events)

    def list_jobs(self, limit: int = 100) -> List[JobSummary]:
        """Most recent jobs first."""
        records = self.store.query(JobStatusRecord, descending=True, limit=limit)
        return [_to_summary(record) for record in records]

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
