"""Process-local counters and timings for the poll, rescan and sweep paths."""
from __future__ import annotations

import contextlib
import threading
import time
from pathlib import Path
from typing import Dict, Iterator

import orjson
import structlog

LOGGER = structlog.get_logger(__name__)

COUNTERS = (
    "polls",
    "jobs_created",
    "jobs_dispatched",
    "replies_written",
    "results_unknown_job",
    "write_failures",
    "parse_failures",
    "jobs_timed_out",
    "jobs_reaped",
    "jobs_dropped",
    "pages_evicted",
    "rescans",
    "sweep_duration_ms",
)


class MetricsRegistry:
    """Thread-safe integer counters; HTTP handlers and the reaper share one."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, int] = dict.fromkeys(COUNTERS, 0)

    def incr(self, name: str, value: int = 1) -> None:
        with self._lock:
            self._values[name] = self._values.get(name, 0) + value

    def get(self, name: str) -> int:
        with self._lock:
            return self._values.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)

    def export(self, *, path: Path) -> Path:
        """Dump the counters as JSON with a UTC timestamp."""
        payload = {
            "counters": self.snapshot(),
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        return path


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, metric_name: str) -> Iterator[None]:
    """Add the wall time of the block, in milliseconds, to ``metric_name``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        registry.incr(metric_name, elapsed_ms)
        LOGGER.debug("timer_stop", metric=metric_name, duration_ms=elapsed_ms)
