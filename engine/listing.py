"""Refresh the list of known batches and the global category statistics."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from store.name_directory import NameDirectory
from store.results_api import ResultsApiClient

from .models import BatchListing, BatchSummary, CategoryStats, StatusSnapshot, percent

logger = logging.getLogger("verifystream.listing")

DEFAULT_STATUS_CONCURRENCY = 8

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_verification_date(value: Optional[str]) -> str:
    """YYYY-MM-DD for ISO timestamps; anything unparseable is returned as is."""
    parsed = _parse_timestamp(value)
    if parsed is None:
        return value or ""
    return parsed.date().isoformat()


def summarize(batch_id: str, name: str, status: StatusSnapshot) -> BatchSummary:
    totals = status.results
    completed = status.is_completed
    return BatchSummary(
        id=batch_id,
        name=name,
        date=format_verification_date(status.timestamp),
        total=status.total_emails,
        processed=status.verified_emails,
        valid=totals.valid,
        invalid=totals.invalid,
        risky=totals.folded_risky,
        status=status.status,
        progress=100 if completed else percent(status.verified_emails, status.total_emails),
    )


async def refresh_listing(
    results_api: ResultsApiClient,
    names: NameDirectory,
    fetch_status: Callable[[str], Awaitable[StatusSnapshot]],
    *,
    concurrency: int = DEFAULT_STATUS_CONCURRENCY,
) -> BatchListing:
    """Fetch every batch id, name the unnamed ones, then fetch their statuses.

    A batch whose status cannot be fetched is logged and left out.
    """
    batch_ids = await asyncio.to_thread(results_api.list_batches)
    await asyncio.to_thread(names.assign_missing, batch_ids)

    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def _fetch(batch_id: str) -> StatusSnapshot:
        async with semaphore:
            return await fetch_status(batch_id)

    statuses = await asyncio.gather(*[_fetch(b) for b in batch_ids], return_exceptions=True)

    running: list[tuple[datetime, BatchSummary]] = []
    recent: list[tuple[datetime, BatchSummary]] = []
    for batch_id, status in zip(batch_ids, statuses):
        if isinstance(status, BaseException):
            logger.error("Error fetching batch %s: %s", batch_id, status)
            continue
        summary = summarize(batch_id, names.resolve(batch_id), status)
        when = _parse_timestamp(status.timestamp) or _EPOCH
        (running if summary.is_running else recent).append((when, summary))

    # Newest first
    running.sort(key=lambda item: item[0], reverse=True)
    recent.sort(key=lambda item: item[0], reverse=True)
    logger.info("Refreshed %d batches (%d running)", len(running) + len(recent), len(running))
    return BatchListing(
        running=[s for _, s in running],
        recent=[s for _, s in recent],
    )


async def refresh_statistics(results_api: ResultsApiClient) -> CategoryStats:
    return await asyncio.to_thread(results_api.get_category_stats)
