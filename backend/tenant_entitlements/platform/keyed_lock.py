"""
Per-key locks.

Serialises work on one key (a subscription id) while different keys proceed
in parallel. Lock objects are reference counted and dropped when unused so
the registry does not grow with the number of tenants.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List


class KeyedLocks:

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, List] = {}  # key -> [lock, holders]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
