"""sortinghat_sync.enrollment_reconciler

Apply one affiliation correction row.

Row columns: identity_id, user_sfid, user_name, user_email, project_slug,
to_org_name (required), to_start_date, to_end_date, from_org_name,
from_start_date, from_end_date.

With from_org_name the row updates the single enrollment matching
(uuid, project_slug, from org, from start, from end).  Without it the row
inserts a new enrollment; an identical existing one surfaces as a collision.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date
from typing import Any

from sortinghat_sync.context import RunContext
from sortinghat_sync.normalize import (
    OPEN_END,
    OPEN_START,
    enrollment_actor,
    field,
    parse_range_date,
)
from sortinghat_sync.shared import CollisionError, InputError, Outcome, PartialEffectError
from sortinghat_sync.store import EnrollmentRecord

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    organization_id: int
    start: date
    end: date

    def values(self) -> dict[str, Any]:
        return {"organization_id": self.organization_id, "start": self.start, "end": self.end}


def _parse_date(row: Mapping[str, str], column: str, open_default: date, who: str) -> date:
    try:
        return parse_range_date(row.get(column), open_default)
    except ValueError:
        raise InputError(f"{who} cannot parse date {column}={field(row, column)!r}", row) from None


def enrollment_changes(current: EnrollmentRecord, target: Target) -> dict[str, Any]:
    stored = current.values()
    return {col: v for col, v in target.values().items() if v != stored[col]}


def reconcile_enrollment(ctx: RunContext, row: Mapping[str, str]) -> Outcome:
    log.debug("enrollment row %s", dict(row))
    identity_id = field(row, "identity_id")
    if not identity_id:
        raise InputError("identity_id cannot be empty", row)

    identity = ctx.store.fetch_identity(identity_id)
    if identity is None:
        ctx.warn(f"cannot find identity with id={identity_id} (row {dict(row)})")
        return Outcome.NOT_FOUND
    uuid = identity.uuid
    who = f"identity_id {identity_id}/{uuid}"

    from_org_name = field(row, "from_org_name")
    from_start = _parse_date(row, "from_start_date", OPEN_START, who)
    from_end = _parse_date(row, "from_end_date", OPEN_END, who)
    to_org_name = field(row, "to_org_name")
    if not to_org_name:
        raise InputError(f"{who} to_org_name cannot be empty", row)
    to_start = _parse_date(row, "to_start_date", OPEN_START, who)
    to_end = _parse_date(row, "to_end_date", OPEN_END, who)

    # Unresolvable references are expected noise: the cache logs each once.
    project_slug = ""
    external_slug = field(row, "project_slug")
    if external_slug:
        project_slug = ctx.cache.resolve_slug(external_slug) or ""
        if not project_slug:
            log.debug("%s unresolved project slug %s", who, external_slug)
            return Outcome.UNRESOLVED
    from_org_id: int | None = None
    if from_org_name:
        from_org_id = ctx.cache.resolve_organization(from_org_name)
        if from_org_id is None:
            log.debug("%s unresolved organization %s", who, from_org_name)
            return Outcome.UNRESOLVED
    to_org_id = ctx.cache.resolve_organization(to_org_name)
    if to_org_id is None:
        log.debug("%s unresolved organization %s", who, to_org_name)
        return Outcome.UNRESOLVED

    target = Target(to_org_id, to_start, to_end)
    enrollment_id: str | None = None
    if from_org_id is not None:
        key = (
            f"uuid={uuid} project_slug={project_slug} "
            f"organization={from_org_name}/{from_org_id} start={from_start} end={from_end}"
        )
        matches = ctx.store.find_enrollment_ids(uuid, project_slug, from_org_id, from_start, from_end)
        if not matches:
            ctx.warn(f"cannot find enrollment with {key} (row {dict(row)})")
            return Outcome.NOT_FOUND
        if len(matches) > 1:
            ctx.warn(f"found more than one enrollment with {key} (row {dict(row)})")
            return Outcome.AMBIGUOUS
        enrollment_id = matches[0]
        if (from_org_id, from_start, from_end) == (to_org_id, to_start, to_end):
            log.debug("enrollment %s for %s nothing changed", enrollment_id, who)
            return Outcome.UNCHANGED
    else:
        log.debug("%s insert mode", who)

    actor = enrollment_actor(row)
    with ctx.locks.hold(identity_id, uuid):
        changes: dict[str, Any] = {}
        if enrollment_id is not None:
            current = ctx.store.fetch_enrollment(enrollment_id)
            if current is None:
                ctx.warn(f"enrollment {enrollment_id} for {who} vanished (row {dict(row)})")
                return Outcome.NOT_FOUND
            # Another row may have moved it off the matched key while we waited.
            if (current.uuid, current.project_slug, current.organization_id, current.start,
                    current.end) != (uuid, project_slug, from_org_id, from_start, from_end):
                ctx.warn(
                    f"enrollment {enrollment_id} changed since match, cannot find enrollment "
                    f"with {key} (row {dict(row)})"
                )
                return Outcome.NOT_FOUND
            changes = enrollment_changes(current, target)
            if not changes:
                log.debug("enrollment %s for %s nothing changed", enrollment_id, who)
                return Outcome.UNCHANGED
            msg = f"enrollment {enrollment_id} {who} " + " ".join(
                f"{col} {getattr(current, col)} -> {new}" for col, new in changes.items()
            )
        else:
            msg = (
                f"new enrollment {who} {to_org_name}/{to_org_id} "
                f"{project_slug} {to_start} {to_end}"
            )
        msg = f"{msg} by {actor}"
        if ctx.dry_run:
            log.info("%s", msg)
            return Outcome.PREVIEW

        try:
            with ctx.store.transaction() as tx:
                if enrollment_id is not None:
                    affected_e = tx.update_enrollment(enrollment_id, changes, actor)
                else:
                    enrollment_id = tx.insert_enrollment(
                        uuid, to_org_id, project_slug, to_start, to_end, actor
                    )
                    affected_e = 1 if enrollment_id is not None else 0
                affected = (
                    affected_e,
                    tx.touch_uidentity(uuid, actor),
                    tx.touch_profile(uuid, actor),
                )
                if min(affected) <= 0:
                    raise PartialEffectError(msg, affected)
        except CollisionError:
            log.debug("%s: collision", msg)
            return Outcome.COLLISION
        except PartialEffectError as exc:
            ctx.warn(
                f"{msg}: didn't affect enrollments or uidentities or profiles: "
                f"{exc.affected}, rolled back"
            )
            return Outcome.PARTIAL

    log.info("%s", msg)
    ctx.counters.record_enrollment(str(enrollment_id), uuid)
    return Outcome.APPLIED
