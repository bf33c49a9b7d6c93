import threading
from typing import Dict, List
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class KeyedLockManager:
    """
    Hands out one lock per key so that work on the same identity is serialized
    while unrelated keys proceed in parallel. Used by the row workers of an
    import job to make "match then create" atomic for a sequence number or title.
    """

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._global_lock = threading.Lock()

    def get_lock(self, key: str) -> threading.Lock:
        """Get or create the lock for a key."""
        with self._global_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    @contextmanager
    def acquire(self, *keys: str):
        """Acquire the locks of all keys, always in sorted order to rule out deadlocks."""
        ordered: List[str] = sorted(set(keys))
        held: List[threading.Lock] = []
        try:
            for key in ordered:
                lock = self.get_lock(key)
                lock.acquire()
                held.append(lock)
            logger.debug("Acquired row locks %s", ordered)
            yield
        finally:
            for lock in reversed(held):
                lock.release()
