"""Run context handed to every reconciler call."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sortinghat_sync.lock_registry import LockRegistry
from sortinghat_sync.lookup_cache import LookupCache
from sortinghat_sync.shared import RunCounters
from sortinghat_sync.store import Store

log = logging.getLogger(__name__)


@dataclass
class RunContext:
    store: Store
    cache: LookupCache
    locks: LockRegistry = field(default_factory=LockRegistry)
    counters: RunCounters = field(default_factory=RunCounters)
    dry_run: bool = False

    @classmethod
    def create(cls, store: Store, dry_run: bool = False) -> RunContext:
        cache = LookupCache(store.fetch_organization_id, store.fetch_internal_slug)
        return cls(store=store, cache=cache, dry_run=dry_run)

    def warn(self, message: str) -> None:
        log.warning("WARNING: %s", message)
        self.counters.warn(message)

    def reset_locks(self) -> None:
        self.locks.reset()
