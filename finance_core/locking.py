"""
Per-account locking

Mutations against one loan or card are read-modify-write sequences on its
balance and must not interleave. Different accounts never contend.
"""

import threading
import weakref
from contextlib import contextmanager
from typing import Iterator


class KeyedLock:
    """
    Hands out one lock per key, created on first use

    Locks are held weakly: an entry lives only while some caller holds or
    waits on its lock, so the map does not grow with every account touched.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Serialize the enclosed block against other holders of the same key"""
        lock = self._lock_for(key)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
