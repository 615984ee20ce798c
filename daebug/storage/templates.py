"""Text templates for page logs and the master index."""
from __future__ import annotations

import time
from typing import Iterable, List, Optional

from daebug.orchestrator.registry import Page, PageState, Realm
from daebug.parse.markdown import RESULTS_TITLE

REQUEST_EMOJI = "🗣️"
REPLY_OK_EMOJI = "👍"
REPLY_FAILED_EMOJI = "🚫"

SESSION_GUIDE = """\
This file is a live session with a remote page. Append a request heading and
a fenced `js` block at the end of the file and save; the page runs the code
on its next poll and the reply is written back under your request.

Replies arrive as a level-4 heading with the duration, followed by a `JSON`
block holding the value or the error text."""


def clock_fmt(timestamp: Optional[float] = None) -> str:
    """Format an epoch timestamp as local ``HH:MM:SS``."""
    return time.strftime("%H:%M:%S", time.localtime(time.time() if timestamp is None else timestamp))


def format_request_heading(agent: str, page: str, clock: str) -> str:
    return f"### {REQUEST_EMOJI}{agent} to {page} at {clock}"


def format_diagnostic_heading(clock: str) -> str:
    return f"### {REQUEST_EMOJI}System at {clock}"


def format_reply_heading(page: str, agent: str, clock: str, duration_ms: int, *, failed: bool = False) -> str:
    emoji = REPLY_FAILED_EMOJI if failed else REPLY_OK_EMOJI
    return f"#### {emoji}{page} to {agent} at {clock} ({max(0, int(duration_ms))}ms)"


def _fence_for(body: str) -> str:
    # The fence must be longer than any backtick run inside the body.
    longest = run = 0
    for char in body:
        run = run + 1 if char == "`" else 0
        longest = max(longest, run)
    return "`" * max(3, longest + 1)


def format_fence(body: str, lang: str) -> List[str]:
    fence = _fence_for(body)
    return [f"{fence}{lang}", *body.rstrip("\n").split("\n"), fence]


def ensure_file_header(lines: List[str], title: str) -> List[str]:
    """Prepend a level-1 title and the session guide unless one is present."""
    for line in lines[:20]:
        if line.startswith("# "):
            return lines
    body = lines
    if len(body) == 1 and not body[0]:
        body = []
    return [f"# {title}", "", *SESSION_GUIDE.split("\n"), "", "---", "", *body]


def _page_line(page: Page) -> str:
    status = "live" if page.state is PageState.IDLE else page.state.value
    realm = " (worker)" if page.realm is Realm.WORKER else ""
    seen = clock_fmt(page.last_seen)
    return f"* [{page.name}]({'daebug/' + page.slug + '.md'}){realm} ({page.url}) at {seen}: {status}"


def render_index(pages: Iterable[Page], *, started_at: float) -> str:
    ordered = sorted(pages, key=lambda page: page.last_seen, reverse=True)
    listing = "\n".join(_page_line(page) for page in ordered) or "_No pages connected yet._"
    return (
        f"# 👾 Daebug remote debugging REPL started {clock_fmt(started_at)}\n"
        "> Interactive sessions for live browser and worker contexts\n"
        "\n"
        "## Active Sessions\n"
        "\n"
        f"{listing}\n"
        "\n"
        "## How to Use\n"
        "\n"
        "1. Open a session file from the list above.\n"
        "2. Append a request heading and a `js` fenced block at the end.\n"
        "3. Save the file; the reply is written below your request.\n"
    )
