"""Filesystem change notifications for page logs."""
from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional

import structlog
from watchfiles import awatch

from daebug.orchestrator.registry import sanitize_name
from daebug.storage.layout import LogLayout

LOGGER = structlog.get_logger(__name__)

ALL_PAGES = "*"


@dataclass(frozen=True)
class LogEvent:
    page: str
    path: Path
    change: str


class Watcher:
    """Turns change notifications under the log directory into ``LogEvent`` items.

    Events land on an unbounded FIFO queue. Single-page watches still watch
    the directory: log writes replace the file by rename, which would detach
    a watch placed on the file itself.
    """

    def __init__(
        self,
        layout: LogLayout,
        *,
        queue: Optional["asyncio.Queue[LogEvent]"] = None,
        debounce_ms: int = 50,
        force_polling: Optional[bool] = None,
    ) -> None:
        self._layout = layout
        self.queue: "asyncio.Queue[LogEvent]" = queue if queue is not None else asyncio.Queue()
        self._debounce_ms = debounce_ms
        self._force_polling = force_polling
        self._stop = asyncio.Event()
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}

    def watch_directory(self) -> "asyncio.Task[None]":
        return self._start(ALL_PAGES)

    def watch_page(self, page: str) -> "asyncio.Task[None]":
        return self._start(sanitize_name(page))

    def _start(self, key: str) -> "asyncio.Task[None]":
        task = self._tasks.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._run(key), name=f"watch:{key}")
            self._tasks[key] = task
            LOGGER.info("watch_started", target=key, path=str(self._layout.logs))
        return task

    async def _run(self, key: str) -> None:
        async for changes in awatch(
            self._layout.logs,
            stop_event=self._stop,
            debounce=self._debounce_ms,
            recursive=False,
            force_polling=self._force_polling,
        ):
            for change, raw_path in sorted(changes, key=lambda item: item[1]):
                slug = self._layout.slug_for(Path(raw_path))
                if slug is None or (key != ALL_PAGES and slug != key):
                    continue
                self.queue.put_nowait(LogEvent(page=slug, path=Path(raw_path), change=change.name.lower()))

    async def stop(self) -> None:
        self._stop.set()
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task


class ChangeConsumer:
    """Drains log events and calls ``handler`` once per page per burst.

    Events are collected until ``window`` seconds pass without a new one
    (capped at ``max_delay``), so a write and its own notification echo are
    handled by a single rescan.
    """

    def __init__(
        self,
        queue: "asyncio.Queue[LogEvent]",
        handler: Callable[[str], object],
        *,
        window: float = 0.15,
        max_delay: float = 1.0,
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._window = window
        self._max_delay = max_delay

    async def drain_once(self) -> Dict[str, LogEvent]:
        first = await self._queue.get()
        self._queue.task_done()
        pending: Dict[str, LogEvent] = {first.page: first}
        deadline = time.monotonic() + self._max_delay
        while True:
            remaining = min(self._window, deadline - time.monotonic())
            if remaining <= 0:
                break
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=remaining)
            except asyncio.TimeoutError:
                break
            self._queue.task_done()
            pending.setdefault(event.page, event)
        for page in pending:
            await self._dispatch(page)
        return pending

    async def _dispatch(self, page: str) -> None:
        try:
            await asyncio.to_thread(self._handler, page)
        except Exception:
            LOGGER.exception("rescan_failed", page=page)

    async def run(self) -> None:
        while True:
            await self.drain_once()
