import asyncio
from pathlib import Path

from daebug.storage.layout import LogLayout
from daebug.watch.watcher import ChangeConsumer, LogEvent, Watcher


def _event(page):
    return LogEvent(page=page, path=Path(f"{page}.md"), change="modified")


def test_consumer_coalesces_events_per_page():
    calls = []

    async def scenario():
        queue = asyncio.Queue()
        consumer = ChangeConsumer(queue, calls.append, window=0.05)
        for page in ("a", "a", "b", "a"):
            queue.put_nowait(_event(page))
        return await consumer.drain_once()

    pending = asyncio.run(scenario())

    assert sorted(pending) == ["a", "b"]
    assert sorted(calls) == ["a", "b"]


def test_consumer_survives_handler_errors():
    def explode(page):
        raise RuntimeError(f"cannot rescan {page}")

    async def scenario():
        queue = asyncio.Queue()
        consumer = ChangeConsumer(queue, explode, window=0.01)
        queue.put_nowait(_event("a"))
        return await consumer.drain_once()

    assert list(asyncio.run(scenario())) == ["a"]


def test_slug_for_ignores_foreign_files(tmp_path):
    layout = LogLayout(tmp_path)
    assert layout.slug_for(layout.logs / "page.md") == "page"
    assert layout.slug_for(layout.logs / ".page.md.abc.tmp") is None
    assert layout.slug_for(tmp_path / "daebug.md") is None


def test_watcher_reports_page_writes(tmp_path):
    layout = LogLayout(tmp_path)

    async def scenario():
        watcher = Watcher(layout, debounce_ms=10)
        watcher.watch_page("p")
        try:
            for attempt in range(20):
                (layout.logs / "q.md").write_text(f"other {attempt}\n", encoding="utf-8")
                layout.page_file("p").write_text(f"# p\n\nsave {attempt}\n", encoding="utf-8")
                try:
                    return await asyncio.wait_for(watcher.queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
            return None
        finally:
            await watcher.stop()

    event = asyncio.run(scenario())

    assert event is not None
    assert event.page == "p"
    assert event.path.name == "p.md"
