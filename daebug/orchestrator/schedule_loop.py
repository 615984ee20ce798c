"""Fixed-interval reaper loop built on asyncio."""
from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from daebug.orchestrator.dispatcher import Dispatcher

LOGGER = structlog.get_logger(__name__)


async def run_reaper_loop(
    dispatcher: Dispatcher,
    *,
    interval_seconds: float = 5.0,
    ticks: Optional[int] = None,
) -> None:
    """Run ``Dispatcher.expire`` every ``interval_seconds``, off the request path."""
    tick = 0
    while ticks is None or tick < ticks:
        try:
            summary = await asyncio.to_thread(dispatcher.expire)
        except Exception:
            LOGGER.exception("reaper_tick_failed", tick=tick)
        else:
            if any(summary.values()):
                LOGGER.info("reaper_tick", tick=tick, **summary)
        tick += 1
        if ticks is None or tick < ticks:
            await asyncio.sleep(interval_seconds)
