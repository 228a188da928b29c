from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class _GuardLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class GuardLocks:
    """Per-guard mutual exclusion for state-mutating patrol operations.

    Held only for the duration of one operation. Guards never contend with each
    other. Within a process this serializes a guard's writes; across processes
    the database constraints stay authoritative.

    An entry lives only while some thread holds or waits for it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, _GuardLock] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def _acquire_entry(self, guard_id: str) -> _GuardLock:
        with self._registry_lock:
            entry = self._locks.get(guard_id)
            if entry is None:
                entry = _GuardLock()
                self._locks[guard_id] = entry
            entry.users += 1
            return entry

    def _release_entry(self, guard_id: str, entry: _GuardLock) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(guard_id, None)

    @contextmanager
    def hold(self, guard_id: str) -> Iterator[None]:
        entry = self._acquire_entry(guard_id)
        try:
            with entry.lock:
                yield
        finally:
            self._release_entry(guard_id, entry)
