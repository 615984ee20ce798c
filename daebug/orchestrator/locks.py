"""Locking primitives shared by the in-memory stores and the log writer."""
from __future__ import annotations

import contextlib
import threading
import zlib
from typing import Dict, Iterator, List, Tuple


class ReadWriteLock:
    """Many concurrent readers or one exclusive writer.

    Writers waiting for the lock block new readers, so a steady stream of
    polls cannot starve a state transition.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextlib.contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextlib.contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class PageLockTable:
    """Lazily populated map of page name to an exclusive lock.

    The map is split into shards, each guarded by its own lock which is held
    only while looking up or inserting an entry. Page locks are acquired
    after the shard lock is released, so waiting on one page never blocks
    lookups for another.
    """

    def __init__(self, shards: int = 16) -> None:
        self._shards: List[Tuple[threading.Lock, Dict[str, threading.Lock]]] = [
            (threading.Lock(), {}) for _ in range(max(1, shards))
        ]

    def _shard(self, page: str) -> Tuple[threading.Lock, Dict[str, threading.Lock]]:
        return self._shards[zlib.crc32(page.encode("utf-8")) % len(self._shards)]

    def lock_for(self, page: str) -> threading.Lock:
        guard, table = self._shard(page)
        with guard:
            lock = table.get(page)
            if lock is None:
                lock = threading.Lock()
                table[page] = lock
            return lock

    @contextlib.contextmanager
    def hold(self, page: str) -> Iterator[None]:
        # No timeout: a pathological writer can starve others on the same page.
        lock = self.lock_for(page)
        with lock:
            yield

    def __len__(self) -> int:
        total = 0
        for guard, table in self._shards:
            with guard:
                total += len(table)
        return total
