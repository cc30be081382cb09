"""
In-process lock registry keyed by asset id.

Serializes engine transitions on the same asset inside one worker process.
Across processes the asset row's version column does the same job; see
``approval_engine._guarded``.
"""

import threading
from contextlib import contextmanager


class KeyedLock:
    """A ``threading.Lock`` per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._locks: dict = {}

    @contextmanager
    def hold(self, key):
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self):
        with self._registry_lock:
            return len(self._locks)


asset_locks = KeyedLock()
