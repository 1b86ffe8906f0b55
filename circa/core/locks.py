import threading
from contextlib import contextmanager


class LockRegistry:
    """Re-entrant mutual exclusion per key.

    Every mutation touching an item's copies, queue, loans or fines holds
    that item's lock, so a freed copy is handed to the queue before any
    walk-in issue on the same item can observe it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def get(self, key):
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.RLock()
            return self._locks[key]

    @contextmanager
    def hold(self, key):
        lock = self.get(key)
        with lock:
            yield lock
