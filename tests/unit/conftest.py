"""Unit test fixtures.

FakeStore implements the Store contract in memory: transactions snapshot the
tables and restore them when the block raises, uniqueness rules mirror
migrations/0001_sortinghat_core.sql, and individual writes can be forced to
fail or to affect zero rows.
"""

from __future__ import annotations

import copy
import threading
import time
from collections import Counter
from contextlib import contextmanager
from datetime import date
from typing import Any

import pytest

from sortinghat_sync.context import RunContext
from sortinghat_sync.shared import CollisionError
from sortinghat_sync.store import EnrollmentRecord, IdentityRecord


class FakeTransaction:
    def __init__(self, store: FakeStore) -> None:
        self._store = store

    def _check(self, op: str) -> bool:
        """Raise an injected error; return False if op must affect nothing."""
        exc = self._store.fail_on.get(op)
        if exc is not None:
            raise exc
        self._store.writes[op] += 1
        return op not in self._store.zero_rows

    def update_identity(self, identity_id: str, changes: dict[str, str], actor: str) -> int:
        if not self._check("update_identity"):
            return 0
        rec = self._store.identities.get(identity_id)
        if rec is None:
            return 0
        self._store.changes.append(("update_identity", dict(changes)))
        new = {**rec, **changes}
        key = (new["source"], new["name"], new["email"], new["username"])
        for other_id, other in self._store.identities.items():
            if other_id != identity_id and (
                other["source"], other["name"], other["email"], other["username"]
            ) == key:
                raise CollisionError("duplicate key value violates unique constraint")
        new["last_modified_by"] = actor
        self._store.identities[identity_id] = new
        return 1

    def _enrollment_key(self, rec: dict[str, Any]) -> tuple[Any, ...]:
        return (rec["uuid"], rec["organization_id"], rec["project_slug"] or "", rec["start"], rec["end"])

    def _check_enrollment_unique(self, eid: str | None, rec: dict[str, Any]) -> None:
        key = self._enrollment_key(rec)
        for other_id, other in self._store.enrollments.items():
            if other_id != eid and self._enrollment_key(other) == key:
                raise CollisionError("duplicate key value violates unique constraint")

    def update_enrollment(self, enrollment_id: str, changes: dict[str, Any], actor: str) -> int:
        if not self._check("update_enrollment"):
            return 0
        rec = self._store.enrollments.get(enrollment_id)
        if rec is None:
            return 0
        self._store.changes.append(("update_enrollment", dict(changes)))
        new = {**rec, **changes, "last_modified_by": actor}
        self._check_enrollment_unique(enrollment_id, new)
        self._store.enrollments[enrollment_id] = new
        return 1

    def insert_enrollment(self, uuid, organization_id, project_slug, start, end, actor):
        if not self._check("insert_enrollment"):
            return None
        new = {
            "uuid": uuid,
            "organization_id": organization_id,
            "project_slug": project_slug,
            "start": start,
            "end": end,
            "last_modified_by": actor,
        }
        self._check_enrollment_unique(None, new)
        eid = str(self._store.next_enrollment_id)
        self._store.next_enrollment_id += 1
        self._store.enrollments[eid] = new
        return eid

    def touch_uidentity(self, uuid: str, actor: str) -> int:
        return self._touch("touch_uidentity", self._store.uidentities, uuid, actor)

    def touch_profile(self, uuid: str, actor: str) -> int:
        return self._touch("touch_profile", self._store.profiles, uuid, actor)

    def _touch(self, op: str, table: dict[str, dict[str, Any]], uuid: str, actor: str) -> int:
        if not self._check(op):
            return 0
        if uuid not in table:
            return 0
        table[uuid] = {"stamps": table[uuid]["stamps"] + 1, "last_modified_by": actor}
        return 1


class FakeStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.identities: dict[str, dict[str, str]] = {}
        self.uidentities: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.organizations: dict[str, int] = {}
        self.slugs: dict[str, str] = {}
        self.enrollments: dict[str, dict[str, Any]] = {}
        self.next_enrollment_id = 1
        self.fail_on: dict[str, Exception] = {}
        self.zero_rows: set[str] = set()
        self.writes: Counter[str] = Counter()
        self.changes: list[tuple[str, dict[str, Any]]] = []
        self.lookups: Counter[str] = Counter()
        self.read_delay = 0.0
        # Called once, after the next find_enrollment_ids returns its matches.
        self.after_find = None

    # -- seeding ------------------------------------------------------------

    def add_identity(
        self,
        identity_id: str,
        uuid: str,
        name: str = "",
        username: str = "",
        email: str = "",
        source: str = "github",
    ) -> None:
        self.identities[identity_id] = {
            "uuid": uuid, "name": name, "username": username,
            "email": email, "source": source, "last_modified_by": "",
        }
        self.uidentities.setdefault(uuid, {"stamps": 0, "last_modified_by": ""})
        self.profiles.setdefault(uuid, {"stamps": 0, "last_modified_by": ""})

    def add_enrollment(
        self,
        uuid: str,
        organization_id: int,
        project_slug: str = "",
        start: date = date(1900, 1, 1),
        end: date = date(2100, 1, 1),
    ) -> str:
        eid = str(self.next_enrollment_id)
        self.next_enrollment_id += 1
        self.enrollments[eid] = {
            "uuid": uuid, "organization_id": organization_id,
            "project_slug": project_slug, "start": start, "end": end,
            "last_modified_by": "",
        }
        return eid

    # -- Store contract -----------------------------------------------------

    def fetch_identity(self, identity_id: str) -> IdentityRecord | None:
        if self.read_delay:
            time.sleep(self.read_delay)
        with self._lock:
            rec = self.identities.get(identity_id)
            if rec is None:
                return None
            return IdentityRecord(
                identity_id, rec["uuid"], rec["name"].strip(),
                rec["username"].strip(), rec["email"].strip(), rec["source"].strip(),
            )

    def fetch_organization_id(self, name: str) -> int | None:
        with self._lock:
            self.lookups[f"org:{name}"] += 1
            return self.organizations.get(name)

    def fetch_internal_slug(self, external_slug: str) -> str | None:
        with self._lock:
            self.lookups[f"slug:{external_slug}"] += 1
            return self.slugs.get(external_slug)

    def find_enrollment_ids(self, uuid, project_slug, organization_id, start, end) -> list[str]:
        with self._lock:
            ids = [
                eid for eid, rec in sorted(self.enrollments.items(), key=lambda kv: int(kv[0]))
                if rec["uuid"] == uuid
                and (rec["project_slug"] or "").strip() == project_slug
                and rec["organization_id"] == organization_id
                and rec["start"] == start
                and rec["end"] == end
            ]
        hook, self.after_find = self.after_find, None
        if hook is not None:
            hook()
        return ids[:2]

    def fetch_enrollment(self, enrollment_id: str) -> EnrollmentRecord | None:
        with self._lock:
            rec = self.enrollments.get(enrollment_id)
            if rec is None:
                return None
            return EnrollmentRecord(
                enrollment_id, rec["uuid"], rec["organization_id"],
                (rec["project_slug"] or "").strip(), rec["start"], rec["end"],
            )

    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = copy.deepcopy(
                (self.identities, self.uidentities, self.profiles,
                 self.enrollments, self.next_enrollment_id)
            )
            try:
                yield FakeTransaction(self)
            except BaseException:
                (self.identities, self.uidentities, self.profiles,
                 self.enrollments, self.next_enrollment_id) = snapshot
                raise


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def ctx(store: FakeStore) -> RunContext:
    return RunContext.create(store)  # type: ignore[arg-type]
