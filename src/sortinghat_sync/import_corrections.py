"""sortinghat_sync.import_corrections

CLI entrypoint: reconcile identity and affiliation corrections against the
identity store.

Usage:
    SH_DSN="host=... dbname=shdb user=shuser" \\
    python -m sortinghat_sync.import_corrections \\
        user_identities_202201061433.csv user_affiliations_202201061525.csv

Environment toggles mirror the options: NCPUS (--threads), ST (--serial),
DRY (--dry-run), DEBUG (--debug), DEBUG_SQL (--debug-sql).

Phases:
  1. identities: every identity row, to completion
  2. enrollments: every affiliation row, with a fresh lock registry
Any hard error stops admission, drains in-flight rows and exits 1.
"""

from __future__ import annotations

import csv
import json
import logging
import os
import sys
import time
import uuid
from datetime import datetime
from pathlib import Path

import click

from sortinghat_sync.config import Settings, build_conninfo, resolve_worker_count
from sortinghat_sync.context import RunContext
from sortinghat_sync.dispatcher import Dispatcher, PhaseResult
from sortinghat_sync.shared import SyncError, normalize_headers, write_run_report
from sortinghat_sync.store import Store, open_pool

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Input
# ---------------------------------------------------------------------------

def read_rows(path: Path) -> list[dict[str, str]]:
    """Read a correction CSV into header-keyed rows."""
    with path.open(encoding="utf-8-sig", newline="") as fh:
        reader = csv.DictReader(fh)
        rows = [normalize_headers(raw) for raw in reader]
        log.debug("%s header: %s", path.name, reader.fieldnames)
    return rows


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def run_import(
    ctx: RunContext,
    workers: int,
    identity_rows: list[dict[str, str]],
    enrollment_rows: list[dict[str, str]],
    run_id: str,
) -> None:
    """Both phases; raises RowFailedError on the first hard error."""
    counters = ctx.counters

    def summarize(result: PhaseResult) -> None:
        kind = "identities" if result.name == "identities" else "enrollments"
        updated = counters.identities if kind == "identities" else counters.enrollments
        click.echo(
            f"[{run_id}] Updated {len(updated)} {kind}, "
            f"{len(counters.uidentities)} uidentities, {len(counters.profiles)} profiles "
            f"({result.rows} rows)"
        )

    Dispatcher(ctx, workers).run(identity_rows, enrollment_rows, on_phase_done=summarize)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "") != ""


@click.command()
@click.argument("identities_csv", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("affiliations_csv", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (default: SH_DSN or SH_* variables)")
@click.option("--threads", default=None, type=int, envvar="NCPUS", help="Worker count, capped at CPU count")
@click.option("--serial", is_flag=True, default=False, help="Process rows one at a time (env ST)")
@click.option("--dry-run", is_flag=True, default=False, help="Log intended changes, write nothing (env DRY)")
@click.option("--debug", is_flag=True, default=False, help="Trace every row (env DEBUG)")
@click.option("--debug-sql", is_flag=True, default=False, help="Log every statement (env DEBUG_SQL)")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--report-dir",
    default="./artifacts/reports",
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
)
def main(
    identities_csv: Path,
    affiliations_csv: Path,
    db_dsn: str | None,
    threads: int | None,
    serial: bool,
    dry_run: bool,
    debug: bool,
    debug_sql: bool,
    run_id: str | None,
    report_dir: Path,
) -> None:
    """Reconcile identity and affiliation corrections."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    t0 = time.monotonic()

    # A flag is also set by the presence of its environment variable.
    settings_debug = debug or _env_flag("DEBUG")
    settings_debug_sql = debug_sql or _env_flag("DEBUG_SQL")
    logging.basicConfig(
        level=logging.DEBUG if settings_debug or settings_debug_sql else logging.INFO,
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )
    try:
        settings = Settings(
            conninfo=db_dsn or build_conninfo(os.environ),
            workers=resolve_worker_count(
                threads, serial or _env_flag("ST")
            ),
            dry_run=dry_run or _env_flag("DRY"),
            debug=settings_debug,
            debug_sql=settings_debug_sql,
        )
    except SyncError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    click.echo(
        f"[{run_id}] Importing: {identities_csv}, {affiliations_csv} files "
        f"(workers={settings.workers}, dry_run={settings.dry_run})"
    )
    identity_rows = read_rows(identities_csv)
    enrollment_rows = read_rows(affiliations_csv)

    pool = open_pool(settings.conninfo, settings.workers)
    ctx = RunContext.create(Store(pool, debug_sql=settings.debug_sql), dry_run=settings.dry_run)
    failed: SyncError | None = None
    try:
        run_import(ctx, settings.workers, identity_rows, enrollment_rows, run_id)
    except SyncError as exc:
        failed = exc
    finally:
        pool.close()

    unresolved = {
        "organizations": ctx.cache.missed_organizations,
        "project_slugs": ctx.cache.missed_slugs,
    }
    for name in unresolved["organizations"]:
        click.echo(f"[{run_id}] Organization not found in store: {name}")
    for slug in unresolved["project_slugs"]:
        click.echo(f"[{run_id}] Project slug not found in store: {slug}")

    report_path = write_run_report(
        report_dir, run_id, started_at, settings.dry_run,
        {"identities_path": str(identities_csv), "affiliations_path": str(affiliations_csv)},
        ctx.counters, unresolved,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    click.echo(json.dumps(ctx.counters.to_dict(), indent=2, default=str))
    click.echo(f"[{run_id}] Time: {time.monotonic() - t0:.3f}s")

    if failed is not None:
        click.echo(f"[{run_id}] FATAL: {failed}", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


if __name__ == "__main__":
    main()
