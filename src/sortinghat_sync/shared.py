"""sortinghat_sync.shared

Shared pieces used by both reconcilers and the dispatcher: exceptions,
per-row outcomes, thread-safe run counters, header normalization and
report writing.
"""

from __future__ import annotations

import enum
import json
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SyncError(Exception):
    """Base class for errors raised while reconciling correction rows."""


class ConfigError(SyncError):
    """Raised when connection or worker settings are unusable."""


class InputError(SyncError):
    """A row cannot be applied as given (missing field, bad date, source change)."""

    def __init__(self, message: str, row: Mapping[str, str] | None = None) -> None:
        self.row = dict(row) if row is not None else None
        if row is not None:
            message = f"{message} in {self.row}"
        super().__init__(message)


class StoreError(SyncError):
    """A store query, write or transaction-control statement failed."""

    def __init__(
        self,
        message: str,
        statement: str | None = None,
        params: tuple[Any, ...] | None = None,
    ) -> None:
        self.statement = statement
        self.params = params
        super().__init__(message)


class CollisionError(StoreError):
    """A write hit a uniqueness constraint: an equivalent change already exists."""


class PartialEffectError(SyncError):
    """Not every write of a row's transaction affected a row; forces rollback."""

    def __init__(self, message: str, affected: tuple[int, ...]) -> None:
        self.affected = affected
        super().__init__(message)


class RowFailedError(SyncError):
    """First hard error of a phase, wrapped with the raw row that caused it."""

    def __init__(self, phase: str, row: Mapping[str, str], cause: BaseException) -> None:
        self.phase = phase
        self.row = dict(row)
        self.cause = cause
        super().__init__(f"{phase}: {cause} (row {self.row})")


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

class Outcome(str, enum.Enum):
    """Result of reconciling a single row.  Only APPLIED writes anything."""

    APPLIED = "applied"
    UNCHANGED = "unchanged"
    PREVIEW = "preview"
    COLLISION = "collision"
    NOT_FOUND = "not_found"
    AMBIGUOUS = "ambiguous"
    UNRESOLVED = "unresolved"
    PARTIAL = "partial"


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    """Process-wide aggregates; every mutator takes the internal lock."""

    identities: set[str] = field(default_factory=set)
    enrollments: set[str] = field(default_factory=set)
    uidentities: set[str] = field(default_factory=set)
    profiles: set[str] = field(default_factory=set)
    outcomes: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def record_identity(self, identity_id: str, uuid: str) -> None:
        with self._lock:
            self.identities.add(identity_id)
            self.uidentities.add(uuid)
            self.profiles.add(uuid)

    def record_enrollment(self, enrollment_id: str, uuid: str) -> None:
        with self._lock:
            self.enrollments.add(enrollment_id)
            self.uidentities.add(uuid)
            self.profiles.add(uuid)

    def record_outcome(self, phase: str, outcome: Outcome) -> None:
        key = f"{phase}_{outcome.value}"
        with self._lock:
            self.outcomes[key] = self.outcomes.get(key, 0) + 1

    def warn(self, message: str) -> None:
        with self._lock:
            self.warnings.append(message)

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "identities_updated": len(self.identities),
                "enrollments_updated": len(self.enrollments),
                "uidentities_updated": len(self.uidentities),
                "profiles_updated": len(self.profiles),
                "outcomes": dict(sorted(self.outcomes.items())),
                "warnings": self.warnings[:50],
            }


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: Mapping[str | None, str | None]) -> dict[str, str]:
    """Return a new dict with header keys whitespace-stripped and None cells as ''.

    Extra cells that csv.DictReader collects under the None key are dropped.
    """
    return {k.strip(): (v or "") for k, v in raw.items() if k is not None}


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    report_dir: Path,
    run_id: str,
    started_at: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    unresolved: dict[str, list[str]],
) -> Path:
    report = {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
        "unresolved": unresolved,
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
