"""
BatchLockRegistry -- in-process mutual exclusion per borrowing batch.

Responsibility:
    Serializes workflow transitions on the SAME batch within one process.
    Transitions on different batches take different locks and never wait
    on each other.  On PostgreSQL the engine additionally holds a
    ``SELECT ... FOR UPDATE`` row lock, which covers multiple processes;
    SQLite ignores FOR UPDATE, so there this registry is the serializer.

Invariants enforced:
    - At most one holder per batch id at a time.
    - Lock objects are dropped once no thread holds or waits on them, so
      the registry does not grow with the number of batches ever touched.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class BatchLockRegistry:
    """Keyed locks, one per batch id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[UUID, _Entry] = {}

    @contextmanager
    def hold(self, batch_id: UUID, timeout: float | None = None) -> Iterator[None]:
        """
        Hold the lock for *batch_id* for the duration of the block.

        Raises:
            TimeoutError: the lock was not acquired within *timeout* seconds.
        """
        with self._guard:
            entry = self._entries.setdefault(batch_id, _Entry())
            entry.users += 1
        try:
            acquired = entry.lock.acquire(timeout=-1 if timeout is None else timeout)
            if not acquired:
                raise TimeoutError(f"Timed out waiting for lock on batch {batch_id}")
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[batch_id]

    def is_locked(self, batch_id: UUID) -> bool:
        with self._guard:
            entry = self._entries.get(batch_id)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
