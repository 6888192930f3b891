"""sortinghat_sync.dispatcher

Drives correction rows through a reconciler with at most N rows in flight.

Per phase: NOT_STARTED -> RUNNING -> DRAINING -> DONE.  A new row is only
admitted after an earlier one reported back.  The first hard error stops
admission; rows already in flight finish before that error is raised,
wrapped in RowFailedError with the offending row.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from sortinghat_sync.context import RunContext
from sortinghat_sync.enrollment_reconciler import reconcile_enrollment
from sortinghat_sync.identity_reconciler import reconcile_identity
from sortinghat_sync.shared import Outcome, RowFailedError

log = logging.getLogger(__name__)

Row = Mapping[str, str]
Reconciler = Callable[[RunContext, Row], Outcome]


class PhaseState(enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    DRAINING = "draining"
    DONE = "done"


@dataclass
class PhaseResult:
    name: str
    state: PhaseState = PhaseState.NOT_STARTED
    rows: int = 0
    outcomes: dict[Outcome, int] = field(default_factory=dict)
    error: RowFailedError | None = None

    def count(self, outcome: Outcome) -> int:
        return self.outcomes.get(outcome, 0)


class Dispatcher:
    """Runs the identities phase, then the enrollments phase, on one RunContext."""

    def __init__(self, ctx: RunContext, workers: int = 1) -> None:
        self.ctx = ctx
        self.workers = max(1, workers)

    def run_phase(self, name: str, rows: Iterable[Row], reconcile: Reconciler) -> PhaseResult:
        result = PhaseResult(name)
        result.state = PhaseState.RUNNING
        log.debug("phase %s: %s with %d workers", name, result.state.value, self.workers)
        try:
            if self.workers == 1:
                self._run_serial(result, rows, reconcile)
            else:
                self._run_pooled(result, rows, reconcile)
        finally:
            result.state = PhaseState.DONE
        if result.error is not None:
            raise result.error
        return result

    def _record(self, result: PhaseResult, outcome: Outcome) -> None:
        result.outcomes[outcome] = result.outcomes.get(outcome, 0) + 1
        self.ctx.counters.record_outcome(result.name, outcome)

    def _fail(self, result: PhaseResult, row: Row, exc: BaseException) -> None:
        log.error("%s row failed: %s", result.name, exc)
        if result.error is None:
            result.error = RowFailedError(result.name, row, exc)

    def _run_serial(self, result: PhaseResult, rows: Iterable[Row], reconcile: Reconciler) -> None:
        for row in rows:
            result.rows += 1
            try:
                outcome = reconcile(self.ctx, row)
            except Exception as exc:
                self._fail(result, row, exc)
                result.state = PhaseState.DRAINING
                return
            self._record(result, outcome)

    def _run_pooled(self, result: PhaseResult, rows: Iterable[Row], reconcile: Reconciler) -> None:
        in_flight: dict[Future[Outcome], Row] = {}

        def collect(done: Iterable[Future[Outcome]]) -> None:
            for fut in done:
                row = in_flight.pop(fut)
                exc = fut.exception()
                if exc is not None:
                    self._fail(result, row, exc)
                    result.state = PhaseState.DRAINING
                else:
                    self._record(result, fut.result())

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix=result.name) as pool:
            for row in rows:
                if result.error is not None:
                    break
                while len(in_flight) >= self.workers:
                    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                    collect(done)
                if result.error is not None:
                    break
                result.rows += 1
                in_flight[pool.submit(reconcile, self.ctx, row)] = row
            result.state = PhaseState.DRAINING
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                collect(done)

    def run(
        self,
        identity_rows: Iterable[Row],
        enrollment_rows: Iterable[Row],
        on_phase_done: Callable[[PhaseResult], None] | None = None,
    ) -> list[PhaseResult]:
        """Identities must finish cleanly before any enrollment row starts."""
        results = []
        for name, rows, reconcile in (
            ("identities", identity_rows, reconcile_identity),
            ("enrollments", enrollment_rows, reconcile_enrollment),
        ):
            result = self.run_phase(name, rows, reconcile)
            self.ctx.reset_locks()
            if on_phase_done is not None:
                on_phase_done(result)
            results.append(result)
        return results
