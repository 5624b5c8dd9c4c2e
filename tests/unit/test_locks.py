"""Unit tests for keyed locks used by the in-memory stores."""

from __future__ import annotations

import threading
import time

from storefront_auth.core.locks import KeyedLocks


def test_locks_are_dropped_once_released() -> None:
    locks = KeyedLocks()

    with locks.hold("user-1"):
        with locks.hold("user-2"):
            assert len(locks) == 2

    assert len(locks) == 0


def test_same_key_is_serialized_across_threads() -> None:
    locks = KeyedLocks()
    active = 0
    peak = 0
    guard = threading.Lock()

    def _worker() -> None:
        nonlocal active, peak
        with locks.hold("user-1"):
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with guard:
                active -= 1

    threads = [threading.Thread(target=_worker) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1
    assert len(locks) == 0
