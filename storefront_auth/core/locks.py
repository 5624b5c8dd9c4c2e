"""Per-key mutual exclusion for process-local stores."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from threading import Lock


class KeyedLocks:
    """Hand out one lock per key and drop it once no caller holds or waits on it."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, tuple[Lock, list[int]]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Serialize the enclosed block against other holders of the same key."""
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = (Lock(), [0])
                self._locks[key] = entry
            entry[1][0] += 1
        lock, waiters = entry
        try:
            with lock:
                yield
        finally:
            with self._guard:
                waiters[0] -= 1
                if waiters[0] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
