"""Per-key locks for serializing work on one rule, fingerprint or alert."""
import threading
from contextlib import contextmanager


class KeyedLocks:
    """Thread-safe registry of one lock per key.

    Entries are dropped once no thread holds or waits on them, so the registry
    stays proportional to the keys currently in use.
    """

    def __init__(self):
        self._locks = {}
        self._waiters = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._waiters[key] = self._waiters.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    del self._locks[key]

    def __len__(self):
        with self._guard:
            return len(self._locks)
