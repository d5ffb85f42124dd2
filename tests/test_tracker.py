import pytest
from pydantic import ValidationError

from engine.models import Category, CategoryTotals, ResultRecord, RunStatus, StatusSnapshot
from engine.tracker import AggregateTracker, estimate_remaining
from store.name_directory import NameDirectory


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _tracker(tmp_path, clock=None) -> tuple[AggregateTracker, NameDirectory]:
    names = NameDirectory(tmp_path / "names.json", name_factory=lambda: "Lead Batch Oct 2026")
    return AggregateTracker(names, clock=clock or _Clock()), names


def _result(email: str, category: str) -> ResultRecord:
    return ResultRecord(email=email, category=Category(category))


def _assert_consistent(snap) -> None:
    assert snap.processed == snap.valid + snap.invalid + snap.risky
    assert 0 <= snap.progress <= 100


def test_begin_starts_zeroed_and_pending(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.begin(3)
    snap = tracker.snapshot(key)

    assert key.startswith("pending-")
    assert snap.status == RunStatus.pending
    assert snap.id is None
    assert (snap.total, snap.processed, snap.valid, snap.invalid, snap.risky) == (3, 0, 0, 0, 0)
    assert snap.estimated_remaining_seconds is None
    assert snap.time_remaining == "Calculating..."


def test_started_rekeys_and_names_batch(tmp_path) -> None:
    tracker, names = _tracker(tmp_path)
    key = tracker.begin(2, "Spring Leads")

    new_key = tracker.on_started(key, "J1")

    assert new_key == "J1"
    with pytest.raises(KeyError):
        tracker.snapshot(key)
    snap = tracker.snapshot("J1")
    assert snap.id == "J1"
    assert snap.display_name == "Spring Leads"
    assert snap.status == RunStatus.running
    assert names.get("J1") == "Spring Leads"


def test_started_without_name_uses_placeholder(tmp_path) -> None:
    tracker, names = _tracker(tmp_path)
    key = tracker.on_started(tracker.begin(1), "J2")

    assert tracker.snapshot(key).display_name == "Lead Batch Oct 2026"
    assert names.get("J2") == "Lead Batch Oct 2026"


def test_results_keep_counters_consistent(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.on_started(tracker.begin(4), "J1")

    previous = tracker.snapshot(key)
    for email, category in (
        ("a@x.com", "valid"),
        ("b@x.com", "invalid"),
        ("c@x.com", "risky"),
        ("d@x.com", "custom"),
    ):
        assert tracker.on_result(key, _result(email, category)) is True
        snap = tracker.snapshot(key)
        _assert_consistent(snap)
        assert snap.processed >= previous.processed
        assert snap.progress >= previous.progress
        previous = snap

    assert (previous.valid, previous.invalid, previous.risky) == (1, 1, 2)
    assert previous.processed == 4
    assert previous.progress == 100
    assert previous.status == RunStatus.running


def test_result_before_started_is_counted(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.begin(2)

    tracker.on_result(key, _result("a@x.com", "valid"))
    snap = tracker.snapshot(key)

    assert snap.processed == 1
    assert snap.status == RunStatus.running
    assert snap.id is None


def test_redelivered_result_raises_total(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.on_started(tracker.begin(2), "J1")

    snaps = []
    for email in ("a@x.com", "b@x.com", "a@x.com"):
        tracker.on_result(key, _result(email, "valid"))
        snaps.append(tracker.snapshot(key))

    assert all(s.processed <= s.total for s in snaps)
    assert (snaps[-1].processed, snaps[-1].total) == (3, 3)
    assert snaps[-1].progress == 100
    assert snaps[-1].status == RunStatus.running


def test_completion_overwrites_with_authoritative_totals(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.on_started(tracker.begin(3), "J1")
    tracker.on_result(key, _result("a@x.com", "valid"))

    changed = tracker.on_completed(key, CategoryTotals(valid=1, invalid=1, risky=0, custom=1))
    snap = tracker.snapshot(key)

    assert changed is True
    assert snap.status == RunStatus.completed
    assert (snap.valid, snap.invalid, snap.risky, snap.processed) == (1, 1, 1, 3)
    assert snap.progress == 100
    assert snap.estimated_remaining_seconds == 0.0


def test_duplicate_completion_is_noop(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.on_started(tracker.begin(2), "J1")
    tracker.on_completed(key, CategoryTotals(valid=2))
    before = tracker.snapshot(key)

    assert tracker.on_completed(key, CategoryTotals(valid=5, invalid=5)) is False
    assert tracker.snapshot(key) == before


def test_completion_raises_total_to_processed(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.on_started(tracker.begin(2), "J1")

    tracker.on_completed(key, CategoryTotals(valid=2, invalid=2), total_emails=3)
    snap = tracker.snapshot(key)

    assert snap.total == 4
    assert snap.processed <= snap.total


def test_late_result_after_completion_counts_but_progress_is_clamped(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.on_started(tracker.begin(1), "J1")
    tracker.on_completed(key, CategoryTotals(valid=1))

    assert tracker.on_result(key, _result("late@x.com", "invalid")) is True
    snap = tracker.snapshot(key)

    assert snap.status == RunStatus.completed
    assert snap.processed == 2
    assert snap.invalid == 1
    assert snap.progress == 100
    _assert_consistent(snap)


def test_failed_run_is_frozen(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.on_started(tracker.begin(3), "J1")
    tracker.on_result(key, _result("a@x.com", "valid"))

    assert tracker.on_failed(key, "connection reset") is True
    frozen = tracker.snapshot(key)

    assert tracker.on_result(key, _result("b@x.com", "valid")) is False
    assert tracker.on_completed(key, CategoryTotals(valid=3)) is False
    assert tracker.on_failed(key, "again") is False
    assert tracker.snapshot(key) == frozen
    assert frozen.status == RunStatus.failed
    assert frozen.failure_reason == "connection reset"
    assert frozen.processed == 1


def test_completed_run_cannot_fail(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.on_started(tracker.begin(1), "J1")
    tracker.on_completed(key, CategoryTotals(valid=1))

    assert tracker.on_failed(key, "late error") is False
    assert tracker.snapshot(key).status == RunStatus.completed


def test_zero_total_reports_zero_progress(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.begin(0)

    snap = tracker.snapshot(key)

    assert snap.progress == 0
    assert snap.estimated_remaining_seconds is None


def test_elapsed_and_remaining_follow_clock(tmp_path) -> None:
    clock = _Clock(100.0)
    tracker, _ = _tracker(tmp_path, clock)
    key = tracker.on_started(tracker.begin(4), "J1")

    clock.now = 110.0
    tracker.on_result(key, _result("a@x.com", "valid"))
    tracker.on_result(key, _result("b@x.com", "valid"))
    snap = tracker.snapshot(key)

    assert snap.elapsed_seconds == 10.0
    assert snap.estimated_remaining_seconds == 10.0
    assert snap.progress == 50
    assert snap.time_elapsed == "00:00:10"
    assert snap.time_remaining == "00:00:10"

    tracker.on_completed(key, CategoryTotals(valid=4))
    clock.now = 500.0
    assert tracker.snapshot(key).elapsed_seconds == 10.0


def test_estimate_remaining() -> None:
    assert estimate_remaining(30.0, 0, 10) is None
    assert estimate_remaining(30.0, 3, 10) == 70.0
    assert estimate_remaining(30.0, 10, 10) == 0.0
    assert estimate_remaining(30.0, 12, 10) == 0.0


def test_apply_snapshot_adopts_absolute_counters(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.begin(0, batch_id="J1")

    applied = tracker.apply_snapshot(
        key,
        StatusSnapshot(
            job_id="J1",
            status="running",
            total_emails=10,
            verified_emails=4,
            results=CategoryTotals(valid=2, invalid=1, risky=0, custom=1),
        ),
    )
    snap = tracker.snapshot(key)

    assert applied is True
    assert snap.total == 10
    assert (snap.valid, snap.invalid, snap.risky, snap.processed) == (2, 1, 1, 4)
    assert snap.status == RunStatus.running
    assert snap.progress == 40


def test_apply_snapshot_ignores_stale_counts(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.begin(10, batch_id="J1")
    tracker.apply_snapshot(
        key, StatusSnapshot(job_id="J1", status="running", total_emails=10, results=CategoryTotals(valid=5))
    )

    applied = tracker.apply_snapshot(
        key,
        StatusSnapshot(job_id="J1", status="running", total_emails=10, results=CategoryTotals(valid=4, invalid=3)),
    )

    assert applied is False
    assert tracker.snapshot(key).valid == 5


def test_apply_completed_snapshot_completes_run(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.begin(0, batch_id="J1")

    tracker.apply_snapshot(
        key,
        StatusSnapshot(job_id="J1", status="completed", total_emails=3, results=CategoryTotals(valid=2, invalid=1)),
    )
    snap = tracker.snapshot(key)

    assert snap.status == RunStatus.completed
    assert snap.progress == 100
    assert snap.processed == 3
    assert tracker.apply_snapshot(
        key, StatusSnapshot(job_id="J1", status="running", results=CategoryTotals(valid=9))
    ) is False


def test_begin_with_batch_id_resolves_stored_name(tmp_path) -> None:
    tracker, names = _tracker(tmp_path)
    names.assign("J9", "Old Batch")

    key = tracker.begin(5, batch_id="J9")

    assert key == "J9"
    assert tracker.snapshot(key).display_name == "Old Batch"
    assert tracker.snapshot(key).id == "J9"


def test_snapshots_are_read_only(tmp_path) -> None:
    tracker, _ = _tracker(tmp_path)
    key = tracker.begin(1)
    snap = tracker.snapshot(key)

    with pytest.raises(ValidationError):
        snap.processed = 99

    assert tracker.snapshot(key).processed == 0
