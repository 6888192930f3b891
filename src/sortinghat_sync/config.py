"""Connection and worker settings."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

import psycopg
from psycopg.conninfo import conninfo_to_dict, make_conninfo

from sortinghat_sync.shared import ConfigError


@dataclass(frozen=True)
class Settings:
    conninfo: str
    workers: int
    dry_run: bool = False
    debug: bool = False
    debug_sql: bool = False


def resolve_worker_count(requested: int | None, serial: bool, cpu_count: int | None = None) -> int:
    """Serial forces 1; an explicit count is capped at the host's CPUs."""
    if serial:
        return 1
    available = cpu_count or os.cpu_count() or 1
    if requested and requested > 0:
        return min(requested, available)
    return available


def build_conninfo(env: Mapping[str, str], prefix: str = "SH_") -> str:
    """Build a libpq conninfo string from <prefix>* variables.

    <prefix>DSN wins when set.  Otherwise <prefix>DB is required and
    <prefix>USER (or <prefix>USR), <prefix>PASS, <prefix>HOST,
    <prefix>PORT and <prefix>PARAMS (extra 'key=value ...') are optional.
    """
    dsn = env.get(f"{prefix}DSN", "")
    if dsn:
        return dsn
    dbname = env.get(f"{prefix}DB", "")
    if not dbname:
        raise ConfigError(f"please specify database via {prefix}DB=... or {prefix}DSN=...")
    parts = {
        "dbname": dbname,
        "user": env.get(f"{prefix}USER") or env.get(f"{prefix}USR") or None,
        "password": env.get(f"{prefix}PASS") or None,
        "host": env.get(f"{prefix}HOST") or "localhost",
        "port": env.get(f"{prefix}PORT") or "5432",
    }
    params = env.get(f"{prefix}PARAMS", "")
    if params:
        try:
            parts.update(conninfo_to_dict(params))
        except psycopg.ProgrammingError as exc:
            raise ConfigError(f"invalid {prefix}PARAMS {params!r}: {exc}") from exc
    return make_conninfo(**{k: v for k, v in parts.items() if v is not None})
