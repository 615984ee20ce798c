"""Definitions for page jobs and their lifecycle store."""
from __future__ import annotations

import enum
import itertools
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from daebug.errors import INVALID_TRANSITION, NOT_FOUND, Outcome
from daebug.orchestrator.locks import ReadWriteLock
from daebug.orchestrator.registry import sanitize_name


class JobState(str, enum.Enum):
    REQUESTED = "requested"
    DISPATCHED = "dispatched"
    STARTED = "started"
    FINISHED = "finished"
    FAILED = "failed"
    TIMEOUT = "timeout"


LEGAL_TRANSITIONS = {
    JobState.REQUESTED: {JobState.DISPATCHED},
    JobState.DISPATCHED: {JobState.STARTED, JobState.TIMEOUT},
    JobState.STARTED: {JobState.FINISHED, JobState.FAILED, JobState.TIMEOUT},
}

IN_FLIGHT = (JobState.DISPATCHED, JobState.STARTED)
TERMINAL = (JobState.FINISHED, JobState.FAILED, JobState.TIMEOUT)


@dataclass
class Job:
    """One unit of code handed to a page, tracked from request to reply.

    ``anchor`` is the request's position among the page's requests with the
    same code and time, so the reply lands under this request even when an
    identical one was saved after it. ``writing`` is set while the reply is
    being written and keeps the sweep away from the job.
    """

    job_id: str
    page_name: str
    agent: str
    code: str
    state: JobState = JobState.REQUESTED
    started_at: float = field(default_factory=time.time)
    request_time: str = ""
    anchor: Optional[int] = None
    dispatched_at: Optional[float] = None
    finished_at: Optional[float] = None
    result: Optional[Dict[str, Any]] = None
    writing: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL


def _same_page(job: Job, page: str) -> bool:
    return job.page_name == page or sanitize_name(job.page_name) == sanitize_name(page)


class JobStore:
    """Owns job identity and state; every mutation goes through ``transition``.

    Records handed out are copies, so callers can never change a stored job
    behind the store's lock. Page names are compared after sanitizing, so a
    job created from a log file slug is found by the page's display name.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = ReadWriteLock()
        self._counter = itertools.count(1)

    def _next_id(self, now: float) -> str:
        # The counter keeps ids distinct within the same millisecond.
        return f"job-{int(now * 1000)}-{next(self._counter):04d}"

    def create(
        self,
        page: str,
        agent: str,
        code: str,
        *,
        request_time: str = "",
        anchor: Optional[int] = None,
        now: Optional[float] = None,
    ) -> Job:
        created = time.time() if now is None else now
        with self._lock.write():
            job = Job(
                job_id=self._next_id(created),
                page_name=page,
                agent=agent,
                code=code,
                started_at=created,
                request_time=request_time,
                anchor=anchor,
            )
            self._jobs[job.job_id] = job
            return replace(job)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock.read():
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def list(self) -> List[Job]:
        with self._lock.read():
            return [replace(job) for job in self._jobs.values()]

    def pending_for_page(self, page: str) -> Optional[Job]:
        """Return the job a poll from ``page`` should receive.

        A Dispatched job (already handed over but not yet reported) wins over
        a Requested one. If more than one candidate exists, the earliest
        ``started_at`` wins, with the id as a final tie-break, so the answer
        is deterministic even if single-flight was somehow violated.
        """
        with self._lock.read():
            candidates = [
                job
                for job in self._jobs.values()
                if _same_page(job, page) and job.state in (JobState.DISPATCHED, JobState.REQUESTED)
            ]
        if not candidates:
            return None
        candidates.sort(
            key=lambda job: (job.state is not JobState.DISPATCHED, job.started_at, job.job_id)
        )
        return replace(candidates[0])

    def active_for_page(self, page: str) -> Optional[Job]:
        """Return any non-terminal job for ``page``, oldest first."""
        with self._lock.read():
            active = [job for job in self._jobs.values() if _same_page(job, page) and not job.is_terminal]
        if not active:
            return None
        return replace(min(active, key=lambda job: (job.started_at, job.job_id)))

    def transition(
        self, job_id: str, new_state: JobState, *, now: Optional[float] = None, writing: bool = False
    ) -> Outcome:
        """Apply one lifecycle edge; ``writing`` marks the job as being answered."""
        stamp = time.time() if now is None else now
        with self._lock.write():
            job = self._jobs.get(job_id)
            if job is None:
                return Outcome.failure(NOT_FOUND, f"unknown job {job_id}")
            if new_state not in LEGAL_TRANSITIONS.get(job.state, set()):
                return Outcome.failure(
                    INVALID_TRANSITION,
                    f"{job_id}: {job.state.value} -> {new_state.value}",
                )
            if new_state is JobState.DISPATCHED:
                busy = any(
                    _same_page(other, job.page_name) and other.state in IN_FLIGHT
                    for other in self._jobs.values()
                )
                if busy:
                    return Outcome.failure(
                        INVALID_TRANSITION,
                        f"{job_id}: page {job.page_name} already has a job in flight",
                    )
                job.dispatched_at = stamp
            job.state = new_state
            job.writing = writing
            if job.is_terminal:
                job.finished_at = stamp
        return Outcome.success()

    def release(self, job_id: str) -> None:
        """Clear the writing mark so the sweep may time the job out."""
        with self._lock.write():
            job = self._jobs.get(job_id)
            if job is not None:
                job.writing = False

    def record_result(self, job_id: str, result: Dict[str, Any]) -> Outcome:
        with self._lock.write():
            job = self._jobs.get(job_id)
            if job is None:
                return Outcome.failure(NOT_FOUND, f"unknown job {job_id}")
            job.result = dict(result)
        return Outcome.success()

    def remove(self, job_id: str) -> None:
        with self._lock.write():
            self._jobs.pop(job_id, None)

    def sweep(self, now: float, timeout: float) -> List[Job]:
        """Move jobs in flight for more than ``timeout`` seconds since dispatch to Timeout."""
        expired: List[Job] = []
        with self._lock.write():
            for job in self._jobs.values():
                if job.writing or job.state not in IN_FLIGHT:
                    continue
                if now - (job.dispatched_at or job.started_at) > timeout:
                    job.state = JobState.TIMEOUT
                    job.finished_at = now
                    expired.append(replace(job))
        return expired

    def reap(self, now: float, retention: float) -> List[Job]:
        """Drop terminal jobs that finished more than ``retention`` seconds ago."""
        with self._lock.write():
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.is_terminal and job.finished_at is not None and now - job.finished_at > retention
            ]
            return [self._jobs.pop(job_id) for job_id in stale]

    def drop_requested(self, *, page: Optional[str] = None, before: Optional[float] = None) -> List[Job]:
        """Remove Requested jobs for ``page``, or created before ``before``."""
        with self._lock.write():
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.state is JobState.REQUESTED
                and (page is None or _same_page(job, page))
                and (before is None or job.started_at < before)
            ]
            return [self._jobs.pop(job_id) for job_id in stale]
