"""Poll/result protocol between pages, the job store and the page logs."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import orjson
import structlog

from daebug.errors import IO_ERROR, NOT_FOUND, PARSE_ERROR, LogParseError, LogWriteError, Outcome
from daebug.observability.metrics import MetricsRegistry, record_duration
from daebug.observability.tracing import clear_context, log_reply, log_request, set_context, span
from daebug.orchestrator.jobs import Job, JobState, JobStore
from daebug.orchestrator.locks import PageLockTable
from daebug.orchestrator.registry import PageRegistry, PageState, Realm, sanitize_name
from daebug.parse.markdown import (
    LogDocument,
    diff,
    latest_unanswered,
    occurrence,
    parse_document,
    should_dispatch,
)
from daebug.storage.layout import LogLayout
from daebug.storage.templates import render_index
from daebug.storage.writers import LogWriter

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PollResponse:
    code: Optional[str] = None
    job_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"code": self.code, "job_id": self.job_id}


@dataclass(frozen=True)
class ReaperSettings:
    job_timeout: float = 60.0
    job_retention: float = 300.0
    page_ttl: float = 3600.0


def format_result(ok: bool, value: Any = None, error: Any = None) -> str:
    """Render a page result as the body of a reply fence."""
    if not ok:
        if error is None:
            return ""
        return error if isinstance(error, str) else orjson.dumps(error, option=orjson.OPT_INDENT_2).decode()
    try:
        return orjson.dumps(value, option=orjson.OPT_INDENT_2).decode()
    except TypeError:
        return str(value)


class Dispatcher:
    """Composes the stores, the parser and the writer into the page protocol.

    Operations never hold a store lock and a page lock at once: every store
    call returns before the writer is entered.
    """

    def __init__(
        self,
        *,
        layout: LogLayout,
        jobs: Optional[JobStore] = None,
        pages: Optional[PageRegistry] = None,
        writer: Optional[LogWriter] = None,
        metrics: Optional[MetricsRegistry] = None,
        reaper: Optional[ReaperSettings] = None,
    ) -> None:
        self.layout = layout
        self.jobs = jobs or JobStore()
        self.pages = pages or PageRegistry()
        self.writer = writer or LogWriter(layout)
        self.metrics = metrics or MetricsRegistry()
        self.reaper = reaper or ReaperSettings()
        self.started_at = time.time()
        self._documents: Dict[str, LogDocument] = {}
        self._documents_lock = threading.Lock()
        self._rescan_locks = PageLockTable()

    # Poll cycle -----------------------------------------------------------

    def poll(self, name: str, url: str, realm: Realm = Realm.PAGE) -> PollResponse:
        self.metrics.incr("polls")
        known = self.pages.get(name) is not None
        self.pages.get_or_create(name, url, realm)
        self.pages.touch(name)
        if not known:
            LOGGER.info("page_registered", page=name, url=url, realm=realm.value)
            self.refresh_index()
        job = self.jobs.pending_for_page(name)
        if job is None:
            return PollResponse()
        if job.state is JobState.REQUESTED:
            outcome = self.jobs.transition(job.job_id, JobState.DISPATCHED)
            if not outcome.ok:
                LOGGER.warning("dispatch_refused", page=name, job_id=job.job_id, detail=outcome.detail)
                return PollResponse()
            self.metrics.incr("jobs_dispatched")
            self.pages.update_state(name, PageState.EXECUTING)
            LOGGER.info("job_dispatched", page=name, job_id=job.job_id)
        return PollResponse(code=job.code, job_id=job.job_id)

    # Result cycle ---------------------------------------------------------

    def submit_result(self, job_id: str, ok: bool, value: Any = None, error: Any = None) -> Outcome:
        job = self.jobs.get(job_id)
        if job is None:
            self.metrics.incr("results_unknown_job")
            LOGGER.warning("result_for_unknown_job", job_id=job_id)
            return Outcome.failure(NOT_FOUND, f"unknown job {job_id}")
        # Claiming Started before writing keeps the reply at-most-once per job;
        # the writing mark keeps the sweep from answering it a second time.
        claimed = self.jobs.transition(job_id, JobState.STARTED, writing=True)
        if not claimed.ok:
            LOGGER.warning("result_rejected", job_id=job_id, detail=claimed.detail)
            return claimed
        page = self._page_name(job.page_name)
        now = time.time()
        duration_ms = int((now - (job.dispatched_at or job.started_at)) * 1000)
        text = format_result(ok, value, error)
        set_context(page=page, job_id=job_id)
        try:
            with span(name="write_reply", page=page):
                self.writer.write_reply(
                    job.page_name,
                    text,
                    duration_ms,
                    agent=job.agent,
                    code=job.code,
                    request_time=job.request_time,
                    anchor=job.anchor,
                    failed=not ok,
                    now=now,
                )
        except (LogWriteError, LogParseError) as exc:
            self.jobs.release(job_id)
            self.metrics.incr("write_failures")
            LOGGER.error("reply_write_failed", error=str(exc))
            return Outcome.failure(IO_ERROR if isinstance(exc, LogWriteError) else PARSE_ERROR, str(exc))
        finally:
            clear_context()
        self.metrics.incr("replies_written")
        log_reply(page=page, agent=job.agent, ok=ok, duration_ms=duration_ms, text=text)
        self.jobs.record_result(job_id, {"ok": ok, "value": value, "error": error})
        finished = self.jobs.transition(job_id, JobState.FINISHED if ok else JobState.FAILED, now=now)
        if not finished.ok:
            LOGGER.error("result_transition_failed", job_id=job_id, detail=finished.detail)
            return finished
        self.pages.update_state(page, PageState.IDLE if ok else PageState.FAILED)
        # Requests saved while this job ran were deferred; pick up the next one.
        self.rescan(page)
        return Outcome.success()

    def report_worker_timeout(self, name: str, duration_ms: float) -> Outcome:
        """Note in the page log that a worker stopped answering and is restarting."""
        if self.pages.get(name) is None:
            LOGGER.warning("diagnostic_for_unknown_page", page=name)
            return Outcome.failure(NOT_FOUND, f"unknown page {name}")
        try:
            self.writer.write_diagnostic(name, f"Worker unresponsive for {int(duration_ms)}ms, restarting...")
        except LogWriteError as exc:
            self.metrics.incr("write_failures")
            LOGGER.error("diagnostic_write_failed", page=name, error=str(exc))
            return Outcome.failure(IO_ERROR, str(exc))
        LOGGER.warning("worker_timeout", page=name, duration_ms=int(duration_ms))
        return Outcome.success()

    # Log rescans ----------------------------------------------------------

    def _page_name(self, page: str) -> str:
        registered = self.pages.find_by_slug(sanitize_name(page))
        return registered.name if registered else page

    def rescan(self, page: str) -> Optional[Job]:
        """Re-read a page log and create a job for a newly added request."""
        self.metrics.incr("rescans")
        name = self._page_name(page)
        key = sanitize_name(name)
        path = self.layout.page_file(name)
        with self._rescan_locks.hold(key):
            try:
                text = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None
            except OSError as exc:
                LOGGER.warning("rescan_read_failed", page=name, error=str(exc))
                return None
            try:
                document = parse_document(text)
            except LogParseError as exc:
                # Keep the last good document so the next clean save diffs against it.
                self.metrics.incr("parse_failures")
                LOGGER.warning("parse_failed", page=name, error=str(exc), line=exc.line)
                return None
            with self._documents_lock:
                previous = self._documents.get(key)
            request = latest_unanswered(document, name)
            wanted = should_dispatch(diff(previous, document), request)
            if wanted and self.jobs.active_for_page(name) is not None:
                # Leave the stored document alone so the request still reads as new later.
                LOGGER.info("request_deferred", page=name, reason="job already active")
                return None
            with self._documents_lock:
                self._documents[key] = document
            if not wanted:
                return None
            log_request(agent=request.agent, page=name, code=request.code)
            job = self.jobs.create(
                name,
                request.agent,
                request.code,
                request_time=request.time,
                anchor=occurrence(document, request),
            )
        self.metrics.incr("jobs_created")
        return job

    def forget(self, page: str) -> None:
        with self._documents_lock:
            self._documents.pop(sanitize_name(page), None)

    # Background sweep -----------------------------------------------------

    def expire(self, now: Optional[float] = None) -> Dict[str, int]:
        """Time out stale jobs, drop aged and orphaned jobs, evict idle pages."""
        stamp = time.time() if now is None else now
        with record_duration(self.metrics, "sweep_duration_ms"):
            timed_out = self.jobs.sweep(stamp, self.reaper.job_timeout)
            for job in timed_out:
                self.metrics.incr("jobs_timed_out")
                page = self._page_name(job.page_name)
                try:
                    self.writer.write_reply(
                        job.page_name,
                        f"job timed out after {int(self.reaper.job_timeout * 1000)}ms",
                        int((stamp - (job.dispatched_at or job.started_at)) * 1000),
                        agent=job.agent,
                        code=job.code,
                        request_time=job.request_time,
                        anchor=job.anchor,
                        failed=True,
                        create_missing=False,
                        now=stamp,
                    )
                except (LogWriteError, LogParseError) as exc:
                    self.metrics.incr("write_failures")
                    LOGGER.error("timeout_reply_failed", page=page, job_id=job.job_id, error=str(exc))
                self.pages.update_state(page, PageState.IDLE)
                LOGGER.warning("job_timed_out", page=page, job_id=job.job_id)
                self.rescan(page)
            reaped = self.jobs.reap(stamp, self.reaper.job_retention)
            self.metrics.incr("jobs_reaped", len(reaped))
            evicted = self.pages.evict_stale(stamp, self.reaper.page_ttl)
            self.metrics.incr("pages_evicted", len(evicted))
            dropped = self.jobs.drop_requested(before=stamp - self.reaper.page_ttl)
            for page in evicted:
                dropped += self.jobs.drop_requested(page=page.name)
                self.forget(page.name)
                LOGGER.info("page_evicted", page=page.name)
            self.metrics.incr("jobs_dropped", len(dropped))
            for job in dropped:
                LOGGER.warning("request_dropped", page=job.page_name, job_id=job.job_id)
        if evicted:
            self.refresh_index()
        return {
            "timed_out": len(timed_out),
            "reaped": len(reaped),
            "evicted": len(evicted),
            "dropped": len(dropped),
        }

    # Index ----------------------------------------------------------------

    def render_index(self) -> str:
        return render_index(self.pages.list(), started_at=self.started_at)

    def refresh_index(self) -> None:
        try:
            self.writer.write_index(self.pages.list(), started_at=self.started_at)
        except LogWriteError as exc:
            LOGGER.error("index_write_failed", error=str(exc))
