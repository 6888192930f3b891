"""Integration test fixtures.

Applies migrations/*.sql against an ephemeral PostgreSQL database provided
by pytest-postgresql.  Tests skip when no PostgreSQL server binaries are
installed on the host.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from sortinghat_sync.context import RunContext
from sortinghat_sync.store import Store, open_pool

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = sorted((PROJECT_ROOT / "migrations").glob("*.sql"))

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


def _have_postgres() -> bool:
    return bool(shutil.which("pg_ctl") or shutil.which("pg_config"))


# ---------------------------------------------------------------------------
# Schema fixture: fresh database per test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(request):
    """Return (autocommit connection, dsn) with the schema applied."""
    if not _have_postgres():
        pytest.skip("PostgreSQL server binaries not available")
    pg = request.getfixturevalue("postgresql")
    dsn = (
        f"host={pg.info.host} "
        f"port={pg.info.port} "
        f"dbname={pg.info.dbname} "
        f"user={pg.info.user} "
        f"password={pg.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def pg_store(db_conn):
    _, dsn = db_conn
    pool = open_pool(dsn, 4)
    try:
        yield Store(pool, debug_sql=True)
    finally:
        pool.close()


@pytest.fixture
def pg_ctx(pg_store) -> RunContext:
    return RunContext.create(pg_store)

