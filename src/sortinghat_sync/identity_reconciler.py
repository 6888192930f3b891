"""sortinghat_sync.identity_reconciler

Apply one identity correction row.

Row columns: identity_id (required), identity_name, identity_username,
identity_email, identity_source, user_sfid, user_email.

Processing order:
  1. Look up the identity; an unknown id is a warning, not an error.
  2. Reject any attempt to change source.
  3. Compare name / username / email; stop if nothing differs.
  4. Under the (identity_id, uuid) lock, re-read and diff again.
  5. In one transaction: update identities (changed columns only), touch
     uidentities and profiles.  A collision or a write that touched no row
     rolls everything back and the row becomes a no-op.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

from sortinghat_sync.context import RunContext
from sortinghat_sync.normalize import field, identity_actor
from sortinghat_sync.shared import CollisionError, InputError, Outcome, PartialEffectError
from sortinghat_sync.store import IDENTITY_COLUMNS, IdentityRecord

log = logging.getLogger(__name__)


def _wanted_values(row: Mapping[str, str]) -> dict[str, str]:
    return {col: field(row, f"identity_{col}") for col in IDENTITY_COLUMNS}


def identity_changes(current: IdentityRecord, row: Mapping[str, str]) -> dict[str, str]:
    """Columns whose trimmed row value differs from the stored one."""
    stored = current.values()
    return {col: v for col, v in _wanted_values(row).items() if v != stored[col]}


def _describe(current: IdentityRecord, changes: dict[str, str]) -> str:
    parts = [f"{col} {getattr(current, col)} -> {new}" for col, new in changes.items()]
    return f"identity_id {current.identity_id}/{current.uuid} " + " ".join(parts)


def reconcile_identity(ctx: RunContext, row: Mapping[str, str]) -> Outcome:
    log.debug("identity row %s", dict(row))
    identity_id = field(row, "identity_id")
    if not identity_id:
        raise InputError("identity_id cannot be empty", row)

    current = ctx.store.fetch_identity(identity_id)
    if current is None:
        ctx.warn(f"cannot find identity with id={identity_id} (row {dict(row)})")
        return Outcome.NOT_FOUND

    new_source = field(row, "identity_source")
    if new_source != current.source:
        raise InputError(
            f"identity_id {identity_id}/{current.uuid} updating source is not "
            f"supported, attempted {current.source} -> {new_source}",
            row,
        )

    if not identity_changes(current, row):
        log.debug("identity_id %s/%s nothing changed", identity_id, current.uuid)
        return Outcome.UNCHANGED

    uuid = current.uuid
    with ctx.locks.hold(identity_id, uuid):
        # Another row for this identity may have committed while we waited.
        current = ctx.store.fetch_identity(identity_id)
        if current is None:
            ctx.warn(f"identity with id={identity_id} vanished (row {dict(row)})")
            return Outcome.NOT_FOUND
        changes = identity_changes(current, row)
        if not changes:
            log.debug("identity_id %s/%s nothing changed", identity_id, uuid)
            return Outcome.UNCHANGED

        actor = identity_actor(row)
        msg = f"{_describe(current, changes)} by {actor}"
        if ctx.dry_run:
            log.info("%s", msg)
            return Outcome.PREVIEW

        try:
            with ctx.store.transaction() as tx:
                affected = (
                    tx.update_identity(identity_id, changes, actor),
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
                f"{msg}: didn't affect identities or uidentities or profiles: "
                f"{exc.affected}, rolled back"
            )
            return Outcome.PARTIAL

    log.info("%s", msg)
    ctx.counters.record_identity(identity_id, uuid)
    return Outcome.APPLIED
