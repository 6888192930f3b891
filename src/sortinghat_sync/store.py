"""sortinghat_sync.store

psycopg-backed access to the identity store.

Reads run on a pooled autocommit connection.  Writes for one row go through
Store.transaction(), which yields a StoreTransaction bound to a single
connection inside conn.transaction(): any exception leaving the block rolls
the whole batch back.

Driver errors never leave this module raw.  UniqueViolation becomes
CollisionError, everything else StoreError.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from typing import Any

import psycopg
from psycopg import errors as pg_errors
from psycopg_pool import ConnectionPool

from sortinghat_sync.shared import CollisionError, StoreError

log = logging.getLogger(__name__)

LOCKED_BY = "individual"

# Columns a correction row may change, per table.
IDENTITY_COLUMNS = ("name", "username", "email")
ENROLLMENT_COLUMNS = ("organization_id", "start", "end")


@dataclass(frozen=True)
class IdentityRecord:
    identity_id: str
    uuid: str
    name: str
    username: str
    email: str
    source: str

    def values(self) -> dict[str, str]:
        return {col: getattr(self, col) for col in IDENTITY_COLUMNS}


@dataclass(frozen=True)
class EnrollmentRecord:
    enrollment_id: str
    uuid: str
    organization_id: int
    project_slug: str
    start: date
    end: date

    def values(self) -> dict[str, Any]:
        return {col: getattr(self, col) for col in ENROLLMENT_COLUMNS}


def open_pool(conninfo: str, size: int) -> ConnectionPool:
    """Open a pool of autocommit connections, one per worker."""
    return ConnectionPool(
        conninfo,
        min_size=1,
        max_size=max(1, size),
        kwargs={"autocommit": True},
        open=True,
    )


def _format_statement(statement: str, params: tuple[Any, ...]) -> str:
    args = " ".join(
        f"{i}:{'(null)' if p is None else p}" for i, p in enumerate(params, start=1)
    )
    return f"{' '.join(statement.split())} [{args}]"


def _run(
    conn: psycopg.Connection,
    statement: str,
    params: tuple[Any, ...],
    debug_sql: bool,
) -> psycopg.Cursor:
    if debug_sql:
        log.debug("SQL %s", _format_statement(statement, params))
    try:
        return conn.execute(statement, params)
    except pg_errors.UniqueViolation as exc:
        raise CollisionError(str(exc), statement, params) from exc
    except psycopg.Error as exc:
        if not debug_sql:
            log.error("SQL %s", _format_statement(statement, params))
        raise StoreError(f"store error: {exc}", statement, params) from exc


class StoreTransaction:
    """Writes for one row; every method returns the affected row count."""

    def __init__(self, conn: psycopg.Connection, debug_sql: bool) -> None:
        self._conn = conn
        self._debug_sql = debug_sql

    def update_identity(self, identity_id: str, changes: dict[str, str], actor: str) -> int:
        assignments = "".join(f"{col} = %s, " for col in changes)
        cur = _run(
            self._conn,
            f"UPDATE identities SET {assignments}"
            "last_modified = now(), last_modified_by = %s, locked_by = %s "
            "WHERE id = %s",
            (*changes.values(), actor, LOCKED_BY, identity_id),
            self._debug_sql,
        )
        return cur.rowcount

    def update_enrollment(self, enrollment_id: str, changes: dict[str, Any], actor: str) -> int:
        assignments = "".join(f'"{col}" = %s, ' for col in changes)
        cur = _run(
            self._conn,
            f"UPDATE enrollments SET {assignments}"
            "last_modified = now(), last_modified_by = %s, locked_by = %s "
            "WHERE id = %s",
            (*changes.values(), actor, LOCKED_BY, int(enrollment_id)),
            self._debug_sql,
        )
        return cur.rowcount

    def insert_enrollment(
        self,
        uuid: str,
        organization_id: int,
        project_slug: str,
        start: date,
        end: date,
        actor: str,
    ) -> str | None:
        """Insert an enrollment and return its id (None if nothing was inserted)."""
        row = _run(
            self._conn,
            'INSERT INTO enrollments (uuid, organization_id, project_slug, "start", "end", '
            "last_modified, last_modified_by, locked_by) "
            "VALUES (%s, %s, %s, %s, %s, now(), %s, %s) RETURNING id",
            (uuid, organization_id, project_slug or None, start, end, actor, LOCKED_BY),
            self._debug_sql,
        ).fetchone()
        return str(row[0]) if row else None

    def touch_uidentity(self, uuid: str, actor: str) -> int:
        return self._touch("uidentities", uuid, actor)

    def touch_profile(self, uuid: str, actor: str) -> int:
        return self._touch("profiles", uuid, actor)

    def _touch(self, table: str, uuid: str, actor: str) -> int:
        cur = _run(
            self._conn,
            f"UPDATE {table} SET last_modified = now(), last_modified_by = %s, "
            "locked_by = %s WHERE uuid = %s",
            (actor, LOCKED_BY, uuid),
            self._debug_sql,
        )
        return cur.rowcount


class Store:
    """Typed reads plus transactional writes over a psycopg connection pool."""

    def __init__(self, pool: ConnectionPool, debug_sql: bool = False) -> None:
        self._pool = pool
        self.debug_sql = debug_sql

    def _fetchall(self, statement: str, params: tuple[Any, ...]) -> list[tuple[Any, ...]]:
        try:
            with self._pool.connection() as conn:
                return _run(conn, statement, params, self.debug_sql).fetchall()
        except psycopg.Error as exc:
            # PoolTimeout / PoolClosed on checkout.
            raise StoreError(f"connection error: {exc}") from exc

    # -- reads --------------------------------------------------------------

    def fetch_identity(self, identity_id: str) -> IdentityRecord | None:
        rows = self._fetchall(
            "SELECT uuid, trim(coalesce(name, '')), trim(coalesce(username, '')), "
            "trim(coalesce(email, '')), trim(source) "
            "FROM identities WHERE id = %s LIMIT 1",
            (identity_id,),
        )
        if not rows:
            return None
        uuid, name, username, email, source = rows[0]
        return IdentityRecord(identity_id, uuid, name, username, email, source)

    def fetch_organization_id(self, name: str) -> int | None:
        rows = self._fetchall(
            "SELECT id FROM organizations WHERE name = %s ORDER BY id LIMIT 1", (name,)
        )
        return int(rows[0][0]) if rows else None

    def fetch_internal_slug(self, external_slug: str) -> str | None:
        rows = self._fetchall(
            "SELECT da_name FROM slug_mapping WHERE sf_name = %s LIMIT 1", (external_slug,)
        )
        return str(rows[0][0]) if rows else None

    def find_enrollment_ids(
        self,
        uuid: str,
        project_slug: str,
        organization_id: int,
        start: date,
        end: date,
    ) -> list[str]:
        """Ids of enrollments matching the composite key; at most two are returned."""
        rows = self._fetchall(
            "SELECT id FROM enrollments "
            "WHERE uuid = %s AND trim(coalesce(project_slug, '')) = %s "
            'AND organization_id = %s AND "start" = %s AND "end" = %s '
            "ORDER BY id LIMIT 2",
            (uuid, project_slug, organization_id, start, end),
        )
        return [str(r[0]) for r in rows]

    def fetch_enrollment(self, enrollment_id: str) -> EnrollmentRecord | None:
        rows = self._fetchall(
            "SELECT uuid, organization_id, trim(coalesce(project_slug, '')), "
            '"start", "end" FROM enrollments WHERE id = %s',
            (int(enrollment_id),),
        )
        if not rows:
            return None
        uuid, org_id, slug, start, end = rows[0]
        return EnrollmentRecord(enrollment_id, uuid, int(org_id), slug, start, end)

    # -- writes -------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        try:
            with self._pool.connection() as conn:
                with conn.transaction():
                    yield StoreTransaction(conn, self.debug_sql)
        except psycopg.Error as exc:
            # Pool checkout or BEGIN / COMMIT / ROLLBACK failures.
            raise StoreError(f"transaction error: {exc}") from exc
