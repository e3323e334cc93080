"""Process-local per-entity locks.

Handlers for distinct events run concurrently in the threadpool. Two events
touching the same subscription or invoice are serialized here within one
process, and by the ``SELECT ... FOR UPDATE`` taken by the resolvers across
processes. Callers that need both take the invoice lock first.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager


class KeyedLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.RLock] = {}
        self._holders: dict[tuple[str, str], int] = {}

    @contextmanager
    def hold(self, kind: str, key: str | None):
        if key is None:
            yield
            return
        slot = (kind, key)
        with self._guard:
            lock = self._locks.get(slot)
            if lock is None:
                lock = threading.RLock()
                self._locks[slot] = lock
            self._holders[slot] = self._holders.get(slot, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                remaining = self._holders[slot] - 1
                if remaining:
                    self._holders[slot] = remaining
                else:
                    del self._holders[slot]
                    del self._locks[slot]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


entity_locks = KeyedLocks()
