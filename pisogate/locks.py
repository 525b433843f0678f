"""
PisoGate Locks
==============

Per-key mutual exclusion and the engine-wide rebuild lock.

- KeyedLocks: one lock per hardware address / client IP / interface,
  released and forgotten when the last holder leaves.
- RebuildLock: firewall rebuilds and reconciliation hold it exclusively;
  per-client operations hold it shared so they never interleave with a
  flush-then-rebuild.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List


class KeyedLocks:
    """Lazily created, reference-counted locks keyed by any hashable."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._refs: Dict[Hashable, int] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
                self._refs[key] = 0
            self._refs[key] += 1

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]

    def active_keys(self) -> List[Hashable]:
        with self._guard:
            return list(self._locks)


class RebuildLock:
    """
    Readers-writer lock.

    exclusive() is re-entrant for the owning thread, and that thread may
    also take shared() while holding it (a rebuild that calls per-client
    operations).
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = None
        self._writer_depth = 0
        self._writers_waiting = 0
        self._reader_depth: Dict[int, int] = {}

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._writer_depth += 1
            else:
                self._writers_waiting += 1
                while self._writer is not None or self._readers > 0:
                    self._cond.wait()
                self._writers_waiting -= 1
                self._writer = me
                self._writer_depth = 1
        try:
            yield
        finally:
            with self._cond:
                self._writer_depth -= 1
                if self._writer_depth == 0:
                    self._writer = None
                    self._cond.notify_all()

    @contextmanager
    def shared(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                owned = True
            else:
                owned = False
                # nested shared in the same thread must not queue behind a waiting writer
                if me not in self._reader_depth:
                    while self._writer is not None or self._writers_waiting:
                        self._cond.wait()
                    self._readers += 1
                self._reader_depth[me] = self._reader_depth.get(me, 0) + 1
        try:
            yield
        finally:
            if not owned:
                with self._cond:
                    self._reader_depth[me] -= 1
                    if self._reader_depth[me] == 0:
                        del self._reader_depth[me]
                        self._readers -= 1
                        if self._readers == 0:
                            self._cond.notify_all()

    @property
    def held_exclusive(self) -> bool:
        with self._cond:
            return self._writer is not None
