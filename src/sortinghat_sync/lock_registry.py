"""Per-entity locks serializing read-modify-write sequences across workers.

Locks are always taken identity-id lock first, merged-identifier (uuid) lock
second, and released in reverse.  A row never holds more than one lock of
each kind, so two rows sharing keys in any combination cannot deadlock.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

log = logging.getLogger(__name__)


class LockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._by_id: dict[str, threading.Lock] = {}
        self._by_uuid: dict[str, threading.Lock] = {}

    def _lock_for(self, table: dict[str, threading.Lock], key: str) -> threading.Lock:
        # Insert-if-absent in one critical section; blocking happens outside it.
        with self._guard:
            lock = table.get(key)
            if lock is None:
                lock = table[key] = threading.Lock()
            else:
                log.debug("Duplicate key %s, sharing existing lock", key)
            return lock

    @contextmanager
    def hold(self, identity_id: str, uuid: str) -> Iterator[None]:
        id_lock = self._lock_for(self._by_id, identity_id)
        uuid_lock = self._lock_for(self._by_uuid, uuid)
        with id_lock:
            with uuid_lock:
                yield

    def reset(self) -> None:
        """Drop every lock.  Only call between phases, with no rows in flight."""
        with self._guard:
            self._by_id.clear()
            self._by_uuid.clear()

    def __len__(self) -> int:
        with self._guard:
            return len(self._by_id) + len(self._by_uuid)
