"""Tracing helpers binding page and job context to log records."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, unbind_contextvars


def _logger():
    return structlog.get_logger("daebug.trace")


def set_context(*, page: str, job_id: Optional[str] = None) -> None:
    bind_contextvars(page=page, job_id=job_id)


def clear_context() -> None:
    unbind_contextvars("page", "job_id")


@contextlib.contextmanager
def span(*, name: str, page: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().debug("trace_span", span=name, page=page, elapsed_ms=elapsed_ms)


def summarise(text: str, limit: int = 100) -> str:
    """Collapse whitespace and truncate for one-line log output."""
    flat = " ".join(text.split())
    if len(flat) > limit:
        return flat[:limit] + "..."
    return flat


def log_request(*, agent: str, page: str, code: str) -> None:
    _logger().info("request_detected", agent=agent, page=page, snippet=summarise(code, 20))


def log_reply(*, page: str, agent: str, ok: bool, duration_ms: int, text: str) -> None:
    _logger().info(
        "reply_written",
        page=page,
        agent=agent,
        outcome="succeeded" if ok else "failed",
        duration_ms=duration_ms,
        summary=summarise(text),
    )
