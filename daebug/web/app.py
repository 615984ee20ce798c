"""HTTP routes for polling pages."""
from __future__ import annotations

import asyncio
import contextlib
from typing import Any, AsyncIterator, List, Optional

import structlog
from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from daebug.config import Settings, load_settings
from daebug.errors import IO_ERROR, PARSE_ERROR
from daebug.orchestrator.dispatcher import Dispatcher, ReaperSettings
from daebug.orchestrator.registry import Realm
from daebug.orchestrator.schedule_loop import run_reaper_loop
from daebug.storage.layout import LogLayout
from daebug.watch.watcher import ChangeConsumer, Watcher

LOGGER = structlog.get_logger(__name__)

HEALTH_TEXT = "👾 Daebug is running"
WORKER_INIT = "worker-init"
WORKER_TIMEOUT = "worker-timeout"


class ResultPayload(BaseModel):
    """Body of ``POST /daebug``: a job result, or a worker lifecycle message."""

    job_id: Optional[str] = None
    ok: bool = False
    value: Any = None
    error: Any = None
    type: Optional[str] = None
    duration: float = 0


def build_dispatcher(settings: Settings) -> Dispatcher:
    return Dispatcher(
        layout=LogLayout(settings.root),
        reaper=ReaperSettings(
            job_timeout=settings.job_timeout_seconds,
            job_retention=settings.job_retention_seconds,
            page_ttl=settings.page_ttl_seconds,
        ),
    )


def create_app(settings: Optional[Settings] = None, *, dispatcher: Optional[Dispatcher] = None) -> FastAPI:
    settings = settings or load_settings()
    dispatcher = dispatcher or build_dispatcher(settings)

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        tasks: List["asyncio.Task[None]"] = []
        watcher: Optional[Watcher] = None
        await asyncio.to_thread(dispatcher.refresh_index)
        if settings.watch:
            watcher = Watcher(dispatcher.layout, debounce_ms=settings.watch_debounce_ms)
            watcher.watch_directory()
            consumer = ChangeConsumer(watcher.queue, dispatcher.rescan, window=settings.coalesce_window_seconds)
            tasks.append(asyncio.create_task(consumer.run(), name="log-consumer"))
            for path in dispatcher.layout.page_files():
                await asyncio.to_thread(dispatcher.rescan, path.stem)
        tasks.append(
            asyncio.create_task(
                run_reaper_loop(dispatcher, interval_seconds=settings.sweep_interval_seconds),
                name="reaper",
            )
        )
        LOGGER.info("server_started", root=str(settings.root), watch=settings.watch)
        try:
            yield
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if watcher is not None:
                await watcher.stop()

    app = FastAPI(title="daebug", version="0.1.0", lifespan=lifespan)
    app.state.dispatcher = dispatcher

    # Pages poll from whatever origin they are served on.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return HEALTH_TEXT

    @app.get("/daebug")
    def poll(
        name: str = Query(...),
        url: str = Query(default=""),
        realm: Realm = Query(default=Realm.PAGE),
    ) -> dict:
        return dispatcher.poll(name, url, realm).as_dict()

    @app.post("/daebug")
    def submit_result(payload: ResultPayload, name: str = Query(default="")) -> JSONResponse:
        if payload.type == WORKER_INIT:
            return JSONResponse({"ok": True, "error": None})
        if payload.type == WORKER_TIMEOUT:
            outcome = dispatcher.report_worker_timeout(name, payload.duration)
        elif payload.job_id is None:
            return JSONResponse({"ok": False, "error": "job_id is required"}, status_code=422)
        else:
            outcome = dispatcher.submit_result(payload.job_id, payload.ok, payload.value, payload.error)
        body = {"ok": outcome.ok, "error": outcome.error}
        if outcome.error in (IO_ERROR, PARSE_ERROR):
            return JSONResponse({**body, "detail": outcome.detail}, status_code=500)
        return JSONResponse(body)

    @app.get("/daebug.md", response_class=PlainTextResponse)
    def index() -> PlainTextResponse:
        return PlainTextResponse(dispatcher.render_index(), media_type="text/markdown; charset=utf-8")

    return app
