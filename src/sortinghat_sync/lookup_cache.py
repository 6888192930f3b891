"""Run-lifetime cache for organization-name and project-slug resolution."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Generic, TypeVar

log = logging.getLogger(__name__)

V = TypeVar("V")


class _Resolver(Generic[V]):
    """Memoized key -> value lookup that reports each missing key once.

    The store query, the hit map and the miss set share one lock, so each
    key is fetched once and a miss is logged once, however many rows ask
    concurrently.
    """

    def __init__(self, kind: str, fetch: Callable[[str], V | None]) -> None:
        self._kind = kind
        self._fetch = fetch
        self._lock = threading.Lock()
        self._hits: dict[str, V] = {}
        self._misses: set[str] = set()

    def resolve(self, key: str) -> V | None:
        with self._lock:
            if key in self._hits:
                log.debug("%s found in cache %s -> %s", self._kind, key, self._hits[key])
                return self._hits[key]
            if key in self._misses:
                return None
            value = self._fetch(key)
            if value is not None:
                self._hits[key] = value
                log.debug("%s found in store %s -> %s", self._kind, key, value)
                return value
            self._misses.add(key)
            log.warning("%s not found in store: %s", self._kind, key)
            return None

    @property
    def misses(self) -> list[str]:
        with self._lock:
            return sorted(self._misses)


class LookupCache:
    """Foreign-key resolution shared by every reconciler call of a run."""

    def __init__(
        self,
        fetch_organization_id: Callable[[str], int | None],
        fetch_internal_slug: Callable[[str], str | None],
    ) -> None:
        self._orgs: _Resolver[int] = _Resolver("Organization", fetch_organization_id)
        self._slugs: _Resolver[str] = _Resolver("Project slug", fetch_internal_slug)

    def resolve_organization(self, name: str) -> int | None:
        return self._orgs.resolve(name)

    def resolve_slug(self, external_slug: str) -> str | None:
        return self._slugs.resolve(external_slug)

    @property
    def missed_organizations(self) -> list[str]:
        return self._orgs.misses

    @property
    def missed_slugs(self) -> list[str]:
        return self._slugs.misses
