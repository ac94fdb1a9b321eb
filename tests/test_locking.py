"""
Tests for per-account locking
"""

import gc
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from finance_core.locking import KeyedLock


class TestKeyedLock:

    def setup_method(self):
        self.locks = KeyedLock()

    def test_same_key_is_serialized(self):
        active = []
        overlaps = []
        guard = threading.Lock()

        def work(_):
            with self.locks.hold("loan_001"):
                with guard:
                    active.append(1)
                    if len(active) > 1:
                        overlaps.append(len(active))
                time.sleep(0.001)
                with guard:
                    active.pop()

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(work, range(40)))

        assert overlaps == []

    def test_nested_holds_on_different_keys(self):
        with self.locks.hold("a"):
            with self.locks.hold("b"):
                assert len(self.locks) == 2

    def test_released_keys_are_dropped(self):
        for index in range(100):
            with self.locks.hold(f"card_{index}"):
                assert len(self.locks) == 1
        gc.collect()

        assert len(self.locks) == 0
