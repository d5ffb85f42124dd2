import asyncio
import logging

from engine.errors import TransportError
from engine.listing import format_verification_date, refresh_listing, refresh_statistics, summarize
from engine.models import CategoryStats, CategoryTotals, StatusSnapshot
from store.name_directory import NameDirectory


class _FakeResultsApi:
    def __init__(self, batch_ids):
        self.batch_ids = batch_ids

    def list_batches(self):
        return list(self.batch_ids)

    def get_category_stats(self):
        return CategoryStats(valid=7, invalid=2, risky=1, total=10)


def _status(job_id, status, timestamp, verified=0, total=4, **results) -> StatusSnapshot:
    return StatusSnapshot(
        job_id=job_id,
        status=status,
        total_emails=total,
        verified_emails=verified,
        results=CategoryTotals(**results),
        timestamp=timestamp,
    )


def test_format_verification_date() -> None:
    assert format_verification_date("2026-10-19T09:30:00Z") == "2026-10-19"
    assert format_verification_date("2026-10-19T23:30:00+00:00") == "2026-10-19"
    assert format_verification_date("last tuesday") == "last tuesday"
    assert format_verification_date(None) == ""


def test_summarize_running_and_completed() -> None:
    running = summarize("J1", "Lead List Oct 2026", _status("J1", "running", None, verified=1, total=3, valid=1))
    done = summarize("J2", "Sales Batch Oct 2026", _status("J2", "completed", None, verified=2, total=4, valid=1, custom=1))

    assert running.is_running
    assert running.progress == 33
    assert not done.is_running
    assert done.progress == 100
    assert done.risky == 1


def test_refresh_listing_splits_sorts_and_names(tmp_path, caplog) -> None:
    names = NameDirectory(tmp_path / "names.json", name_factory=lambda: "Campaign Group Oct 2026")
    names.assign("B", "Kept Name")
    statuses = {
        "A": _status("A", "completed", "2026-10-01T10:00:00Z", verified=4, valid=4),
        "B": _status("B", "running", "2026-10-18T10:00:00Z", verified=2, valid=1, invalid=1),
        "C": _status("C", "completed", "2026-10-15T10:00:00Z", verified=4, valid=2, risky=2),
        "D": _status("D", "started", "2026-10-19T10:00:00Z"),
    }

    async def fetch_status(batch_id: str) -> StatusSnapshot:
        await asyncio.sleep(0)
        if batch_id == "BROKEN":
            raise TransportError("status unavailable")
        return statuses[batch_id]

    api = _FakeResultsApi(["A", "B", "BROKEN", "C", "D"])
    with caplog.at_level(logging.ERROR, logger="verifystream.listing"):
        listing = asyncio.run(refresh_listing(api, names, fetch_status, concurrency=2))

    assert [b.id for b in listing.running] == ["D", "B"]
    assert [b.id for b in listing.recent] == ["C", "A"]
    assert listing.running[1].name == "Kept Name"
    assert listing.recent[0].name == "Campaign Group Oct 2026"
    assert listing.recent[0].date == "2026-10-15"
    assert "Error fetching batch BROKEN" in caplog.text
    assert set(NameDirectory(tmp_path / "names.json").all()) == {"A", "B", "BROKEN", "C", "D"}


def test_refresh_listing_with_no_batches(tmp_path) -> None:
    async def fetch_status(batch_id: str) -> StatusSnapshot:
        raise AssertionError("no status fetch expected")

    listing = asyncio.run(refresh_listing(_FakeResultsApi([]), NameDirectory(tmp_path / "n.json"), fetch_status))

    assert listing.running == []
    assert listing.recent == []


def test_refresh_statistics() -> None:
    stats = asyncio.run(refresh_statistics(_FakeResultsApi([])))

    assert stats.total == 10
    assert stats.verification_rate == 70.0
