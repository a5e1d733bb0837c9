"""
Per-session write serialization.

At most one mutation per session is in flight inside a process; writes to
different sessions never wait on each other. Across processes the session
row lock (``SELECT ... FOR UPDATE``) and the unique ordinal constraint do
the same job.
"""

import threading
import uuid
from contextlib import contextmanager
from typing import Generator, Hashable


class SessionLockRegistry:
    """
    Reference-counted mutex per session key.

    Entries are created on first use and dropped when the last holder
    releases, so the registry only ever holds keys that are being written.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}  # key -> [lock, refcount]

    @contextmanager
    def hold(self, account_id: uuid.UUID, external_id: str) -> Generator[None, None, None]:
        """Block until the session key is free, then hold it for the block."""
        key = (account_id, external_id)
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Process-wide registry shared by every request thread
session_locks = SessionLockRegistry()
