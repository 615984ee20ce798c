"""Registry of pages that have polled the server."""
from __future__ import annotations

import enum
import re
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from daebug.orchestrator.locks import ReadWriteLock


class PageState(str, enum.Enum):
    IDLE = "idle"
    EXECUTING = "executing"
    FAILED = "failed"


class Realm(str, enum.Enum):
    """Execution context a client reports when it polls."""

    PAGE = "page"
    WORKER = "worker"


def sanitize_name(name: str) -> str:
    """Lowercase a page name and collapse anything non-alphanumeric to ``-``."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


@dataclass
class Page:
    name: str
    url: str
    last_seen: float = field(default_factory=time.time)
    state: PageState = PageState.IDLE
    realm: Realm = Realm.PAGE

    @property
    def slug(self) -> str:
        return sanitize_name(self.name) or "page"


class PageRegistry:
    """Owns page presence and state, independent of the job store."""

    def __init__(self) -> None:
        self._pages: Dict[str, Page] = {}
        self._lock = ReadWriteLock()

    def get_or_create(self, name: str, url: str, realm: Realm = Realm.PAGE, *, now: Optional[float] = None) -> Page:
        with self._lock.read():
            page = self._pages.get(name)
            if page is not None:
                return replace(page)
        with self._lock.write():
            # Another poll may have registered the page between the two locks.
            page = self._pages.get(name)
            if page is None:
                page = Page(name=name, url=url, realm=realm, last_seen=time.time() if now is None else now)
                self._pages[name] = page
            return replace(page)

    def touch(self, name: str, *, now: Optional[float] = None) -> None:
        with self._lock.write():
            page = self._pages.get(name)
            if page is not None:
                page.last_seen = time.time() if now is None else now

    def update_state(self, name: str, state: PageState, *, now: Optional[float] = None) -> None:
        with self._lock.write():
            page = self._pages.get(name)
            if page is None:
                return
            page.state = state
            page.last_seen = time.time() if now is None else now

    def get(self, name: str) -> Optional[Page]:
        with self._lock.read():
            page = self._pages.get(name)
            return replace(page) if page else None

    def find_by_slug(self, slug: str) -> Optional[Page]:
        with self._lock.read():
            for page in self._pages.values():
                if page.slug == slug:
                    return replace(page)
        return None

    def list(self) -> List[Page]:
        with self._lock.read():
            return [replace(page) for page in self._pages.values()]

    def evict_stale(self, now: float, ttl: float) -> List[Page]:
        with self._lock.write():
            stale = [name for name, page in self._pages.items() if now - page.last_seen > ttl]
            return [self._pages.pop(name) for name in stale]
