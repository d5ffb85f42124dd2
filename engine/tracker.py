"""Running counters, progress and ETA for batch verification runs.

The tracker is the only place verification state is mutated during a run.
Streams and poll loops feed it events; everyone else reads ``RunSnapshot``
copies.

Invariants held at every snapshot:
- processed == valid + invalid + risky
- processed <= total (extra results raise total)
- counters never decrease (except when authoritative completion totals
  replace streamed counts)
- status moves forward only: pending -> running -> completed | failed
"""

import logging
import time
import uuid
from typing import Callable, Optional

from store.name_directory import NameDirectory

from .models import (
    BatchRun,
    Category,
    CategoryTotals,
    ResultRecord,
    RunSnapshot,
    RunStatus,
    StatusSnapshot,
    percent,
)

logger = logging.getLogger("verifystream.tracker")

_FORWARD = {
    RunStatus.pending: {RunStatus.running, RunStatus.completed, RunStatus.failed},
    RunStatus.running: {RunStatus.completed, RunStatus.failed},
    RunStatus.completed: set(),
    RunStatus.failed: set(),
}


class AggregateTracker:
    """Owns one BatchRun per active or recently active key.

    Runs are registered under a local placeholder key and re-keyed to the
    producer's job id once it is known.
    """

    def __init__(
        self,
        names: NameDirectory,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._names = names
        self._clock = clock
        self._runs: dict[str, BatchRun] = {}

    # --- registry ---

    def begin(
        self,
        total: int,
        name: Optional[str] = None,
        *,
        batch_id: Optional[str] = None,
        started_at: Optional[float] = None,
    ) -> str:
        """Register a fresh run with zeroed counters and return its key."""
        now = self._clock()
        run = BatchRun(
            id=batch_id,
            requested_name=name,
            display_name=name or "",
            total=max(0, int(total)),
            started_at=started_at if started_at is not None else now,
            updated_at=now,
        )
        key = batch_id or f"pending-{uuid.uuid4().hex[:12]}"
        if batch_id and not run.display_name:
            run.display_name = self._names.resolve(batch_id)
        self._runs[key] = run
        return key

    def forget(self, key: str) -> None:
        self._runs.pop(key, None)

    def _run(self, key: str) -> BatchRun:
        try:
            return self._runs[key]
        except KeyError:
            raise KeyError(f"unknown run {key!r}") from None

    def _transition(self, run: BatchRun, target: RunStatus) -> bool:
        if run.status == target:
            return False
        if target not in _FORWARD[run.status]:
            logger.debug("Ignoring %s -> %s for run %s", run.status.value, target.value, run.id)
            return False
        run.status = target
        return True

    # --- event contract ---

    def on_started(self, key: str, batch_id: str) -> str:
        """Adopt the producer's job id and record the run's name.

        Returns the run's new key.
        """
        run = self._run(key)
        run.id = batch_id
        name = run.requested_name or self._names.resolve(batch_id)
        self._names.assign(batch_id, name)
        run.display_name = name
        self._transition(run, RunStatus.running)
        run.updated_at = self._clock()

        if key != batch_id:
            self._runs.pop(key, None)
            if batch_id in self._runs:
                logger.warning("Run %s was already tracked; replacing it", batch_id)
            self._runs[batch_id] = run
        logger.info("Batch %s started as %r (%d emails)", batch_id, name, run.total)
        return batch_id

    def on_result(self, key: str, record: ResultRecord) -> bool:
        """Count one verification result. Returns False if the run is frozen."""
        run = self._run(key)
        category = record.category
        if run.status == RunStatus.failed:
            return False
        if run.status == RunStatus.completed:
            # Late records still count; progress stays clamped at 100.
            logger.debug("Result for %s arrived after completion", run.id)

        run.processed += 1
        if category == Category.valid:
            run.valid += 1
        elif category == Category.invalid:
            run.invalid += 1
        else:
            run.risky += 1
        if run.processed > run.total:
            logger.debug("Run %s counted %d results for %d emails", run.id, run.processed, run.total)
            run.total = run.processed
        self._transition(run, RunStatus.running)
        run.updated_at = self._clock()
        return True

    def on_completed(
        self,
        key: str,
        totals: CategoryTotals,
        total_emails: Optional[int] = None,
    ) -> bool:
        """Overwrite counters with the producer's final totals.

        A repeated completion for the same run is a no-op. Returns whether
        anything changed.
        """
        run = self._run(key)
        if run.status == RunStatus.completed:
            logger.debug("Duplicate completion for %s ignored", run.id)
            return False
        if run.status == RunStatus.failed:
            logger.warning("Completion for failed run %s ignored", run.id)
            return False

        run.valid = totals.valid
        run.invalid = totals.invalid
        run.risky = totals.folded_risky
        run.processed = totals.processed
        if total_emails is not None and total_emails > 0:
            run.total = max(run.total, total_emails)
        run.total = max(run.total, run.processed)
        self._transition(run, RunStatus.completed)
        run.finished_at = run.updated_at = self._clock()
        logger.info(
            "Batch %s completed: %d valid, %d invalid, %d risky",
            run.id,
            run.valid,
            run.invalid,
            run.risky,
        )
        return True

    def on_failed(self, key: str, reason: str) -> bool:
        """Freeze the run at its last counters. Not retried."""
        run = self._run(key)
        if not self._transition(run, RunStatus.failed):
            return False
        run.failure_reason = reason
        run.finished_at = run.updated_at = self._clock()
        logger.warning("Batch %s failed: %s", run.id or key, reason)
        return True

    def apply_snapshot(self, key: str, snapshot: StatusSnapshot) -> bool:
        """Apply a polled status as one coalesced update.

        Absolute counters are adopted only when none of them would go
        backwards. A completed snapshot is handed to ``on_completed``.
        """
        run = self._run(key)
        if run.status in (RunStatus.failed, RunStatus.completed):
            return False

        if snapshot.total_emails > run.total:
            run.total = snapshot.total_emails
        if run.id is None:
            run.id = snapshot.job_id

        if snapshot.is_completed:
            return self.on_completed(key, snapshot.results, snapshot.total_emails)

        totals = snapshot.results
        if snapshot.verified_emails != totals.processed:
            logger.debug(
                "Status for %s reports %d verified but categories sum to %d",
                run.id,
                snapshot.verified_emails,
                totals.processed,
            )
        incoming = (totals.valid, totals.invalid, totals.folded_risky)
        if any(new < old for new, old in zip(incoming, (run.valid, run.invalid, run.risky))):
            logger.warning("Ignoring stale status for %s: counters would decrease", run.id)
            return False

        run.valid, run.invalid, run.risky = incoming
        run.processed = sum(incoming)
        run.total = max(run.total, run.processed)
        self._transition(run, RunStatus.running)
        run.updated_at = self._clock()
        return True

    # --- reads ---

    def snapshot(self, key: str) -> RunSnapshot:
        run = self._run(key)
        now = run.finished_at if run.finished_at is not None else self._clock()
        elapsed = max(0.0, now - run.started_at)

        if run.status == RunStatus.completed:
            progress = 100
            remaining: Optional[float] = 0.0
        else:
            progress = percent(run.processed, run.total)
            remaining = estimate_remaining(elapsed, run.processed, run.total)

        return RunSnapshot(
            id=run.id,
            display_name=run.display_name,
            total=run.total,
            processed=run.processed,
            valid=run.valid,
            invalid=run.invalid,
            risky=run.risky,
            status=run.status,
            started_at=run.started_at,
            progress=progress,
            elapsed_seconds=elapsed,
            estimated_remaining_seconds=remaining,
            failure_reason=run.failure_reason,
        )


def estimate_remaining(elapsed: float, processed: int, total: int) -> Optional[float]:
    """Seconds left at the observed throughput, or None before the first result."""
    if processed <= 0:
        return None
    return max(0.0, elapsed / processed * (total - processed))
