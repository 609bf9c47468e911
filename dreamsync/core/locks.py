"""Per-key locking for owner- and record-scoped critical sections."""

import contextlib
import threading
from typing import Dict, Hashable, Iterator, List


class KeyedLock:
    """A family of mutexes addressed by key.

    Callers holding different keys never block each other. A key's lock is
    created on first use and dropped once no thread holds or waits on it, so
    the table does not grow with the number of records ever seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._refs: Dict[Hashable, int] = {}

    @contextlib.contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._refs[key] = self._refs.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]

    def is_held(self, key: Hashable) -> bool:
        with self._guard:
            lock = self._locks.get(key)
            return lock is not None and lock.locked()

    def active_keys(self) -> List[Hashable]:
        with self._guard:
            return list(self._locks)
