"""In-place writers for page logs.

Every mutation of a page log runs under that page's lock: read, parse,
splice, then replace the file atomically. Locks are per page, so writing
one page's log never waits on another's.
"""
from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path
from typing import Callable, Iterable, List, Optional, TypeVar

import structlog

from daebug.errors import LogWriteError
from daebug.orchestrator.locks import PageLockTable
from daebug.orchestrator.registry import Page, sanitize_name
from daebug.parse.markdown import (
    RESULTS_TITLE,
    LogDocument,
    Request,
    find_requests,
    is_entry_heading,
    normalise,
    parse_document,
    results_span,
)
from daebug.storage.layout import LogLayout
from daebug.storage.templates import (
    clock_fmt,
    ensure_file_header,
    format_diagnostic_heading,
    format_fence,
    format_reply_heading,
    format_request_heading,
    render_index,
)

__all__ = ["LogWriter", "atomic_write"]

LOGGER = structlog.get_logger(__name__)

T = TypeVar("T")


def atomic_write(path: Path, text: str) -> None:
    """Write ``text`` to a sibling temp file, fsync it and rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""


def _with_retry(action: Callable[[], T], *, op: str, path: Path) -> T:
    try:
        return action()
    except OSError as exc:
        LOGGER.warning("log_io_retry", op=op, path=str(path), error=str(exc))
    try:
        return action()
    except OSError as exc:
        raise LogWriteError(f"{op} failed for {path}: {exc}") from exc


def _trim_trailing(lines: List[str]) -> List[str]:
    trimmed = list(lines)
    while trimmed and not trimmed[-1].strip():
        trimmed.pop()
    return trimmed


def _finish(lines: List[str]) -> str:
    if not lines or lines[-1] != "":
        lines = [*lines, ""]
    return "\n".join(lines)


class LogWriter:
    """Coordinates in-place writes to the page logs under a layout."""

    def __init__(self, layout: LogLayout, *, locks: Optional[PageLockTable] = None) -> None:
        self._layout = layout
        self._locks = locks or PageLockTable()

    @property
    def locks(self) -> PageLockTable:
        return self._locks

    def _load(self, path: Path, title: str) -> List[str]:
        text = _with_retry(lambda: _read_text(path), op="read", path=path)
        return ensure_file_header(normalise(text).split("\n"), title)

    def _store(self, path: Path, lines: List[str]) -> None:
        text = _finish(lines)
        _with_retry(lambda: atomic_write(path, text), op="write", path=path)

    @staticmethod
    def _locate(
        document: LogDocument,
        page: str,
        code: Optional[str],
        request_time: str,
        anchor: Optional[int] = None,
    ) -> Optional[Request]:
        requests = find_requests(document, page)
        if code is None:
            unanswered = [request for request in requests if not request.has_footer]
            return unanswered[-1] if unanswered else None
        matches = [request for request in requests if request.code.strip() == code.strip()]
        timed = [request for request in matches if request.time == request_time]
        candidates = timed or matches
        if anchor is not None and anchor < len(timed) and not timed[anchor].has_footer:
            return timed[anchor]
        # Identical requests saved later were queued behind this job; answer the earliest.
        for request in candidates:
            if not request.has_footer:
                return request
        return None

    def write_reply(
        self,
        page: str,
        result: str,
        duration_ms: int,
        *,
        agent: str = "agent",
        code: Optional[str] = None,
        request_time: str = "",
        anchor: Optional[int] = None,
        failed: bool = False,
        create_missing: bool = True,
        now: Optional[float] = None,
    ) -> Optional[Path]:
        """Insert a reply block directly under the request it answers.

        The request is the unanswered one whose code and time match, picked
        by ``anchor`` when given and the earliest otherwise (or simply the
        latest unanswered one when ``code`` is None). When no such request is
        in the file, the request and the reply are appended together, unless
        ``create_missing`` is false, in which case nothing is written and
        None is returned.
        """
        path = self._layout.page_file(page)
        with self._locks.hold(sanitize_name(page)):
            lines = self._load(path, f"{page} Session")
            document = parse_document("\n".join(lines))
            target = self._locate(document, page, code, request_time, anchor)
            if target is None and not create_missing:
                LOGGER.warning("reply_target_missing", page=page, request_time=request_time)
                return None
            clock = clock_fmt(now)
            reply = [
                "",
                format_reply_heading(page, agent, clock, duration_ms, failed=failed),
                *format_fence(result, "JSON"),
            ]
            if target is None:
                request = ["", format_request_heading(agent, page, request_time or clock), *format_fence(code or "", "js")]
                output = _trim_trailing(lines) + request + reply
            else:
                head = lines[: target.fence_end]
                if target.heading_line is None:
                    heading = format_request_heading(agent, page, clock)
                    head = lines[: target.fence_start] + [heading] + lines[target.fence_start : target.fence_end]
                tail = lines[target.fence_end :]
                if tail and tail[0].strip():
                    tail = ["", *tail]
                output = head + reply + tail
            self._store(path, output)
        return path

    def update_test_results(self, page: str, content: str) -> Path:
        """Replace the body of the ``## Test Results`` section, or append one.

        Applying the same content twice leaves the file byte-identical.
        """
        body = normalise(content).strip("\n")
        for _, block in parse_document(body).headings():
            if block.level <= 2 or is_entry_heading(block):
                raise ValueError("test results content must not contain section or exchange headings")
        content_lines = body.split("\n") if body.strip() else []
        path = self._layout.page_file(page)
        with self._locks.hold(sanitize_name(page)):
            lines = self._load(path, f"{page} Session")
            document = parse_document("\n".join(lines))
            span = results_span(document)
            section = ["", *content_lines, ""]
            if span is None:
                output = _trim_trailing(lines) + ["", f"## {RESULTS_TITLE}"] + section
            else:
                # Entries appended below the section belong to the session, not the results.
                start, end = span
                output = lines[:start] + section + lines[end:]
            self._store(path, output)
        return path

    def write_diagnostic(self, page: str, message: str, *, now: Optional[float] = None) -> Path:
        """Append a ``System`` note, such as a worker restart, to the page log."""
        path = self._layout.page_file(page)
        with self._locks.hold(sanitize_name(page)):
            lines = self._load(path, f"{page} Session")
            note = ["", format_diagnostic_heading(clock_fmt(now)), *format_fence(message, "Text")]
            self._store(path, _trim_trailing(lines) + note)
        return path

    def write_index(self, pages: Iterable[Page], *, started_at: float) -> Path:
        path = self._layout.index
        text = render_index(pages, started_at=started_at)
        with self._locks.hold(f"__index__:{path.name}"):
            _with_retry(lambda: atomic_write(path, text), op="write", path=path)
        return path
