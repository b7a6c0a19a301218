"""Per-resource-key mutual exclusion.

The queue drain and conflict resolution both write instances by name.
Holding the key's lock while doing so keeps a drain from applying a
queued mutation halfway through a delete-and-recreate resolution.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class ResourceLocks:
    """Lazily created re-entrant locks, one per resource key.

    A key's lock is dropped once nobody holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}
        self._users: dict[str, int] = {}

    def _acquire_entry(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1
            return lock

    def _release_entry(self, key: str) -> None:
        with self._guard:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Hold the exclusive section for key."""
        lock = self._acquire_entry(key)
        try:
            with lock:
                yield
        finally:
            self._release_entry(key)

    def __len__(self) -> int:
        """Number of keys currently held or waited for."""
        with self._guard:
            return len(self._locks)


def lock_key(resource_kind: str, resource_key: str) -> str:
    """Build the lock name for a resource."""
    return f"{resource_kind}:{resource_key}"
