"""Track a batch by polling its status instead of reading a live stream.

Used when resuming a view of a batch that is already running (after a
restart, or when no stream connection is open). Each fetch is applied to
the tracker as one coalesced update. Fetch failures are logged and retried
on the next tick with no upper bound; only completion or ``cancel()`` ends
the loop.
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional

from . import config
from .models import RunSnapshot, StatusSnapshot
from .tracker import AggregateTracker

logger = logging.getLogger("verifystream.poller")


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


class PollReconciler:
    """Fetch -> apply -> wait loop for one batch."""

    def __init__(
        self,
        fetch_status: Callable[[str], Awaitable[StatusSnapshot]],
        tracker: AggregateTracker,
        key: str,
        batch_id: str,
        *,
        interval: float = config.POLL_INTERVAL_SECONDS,
        on_update: Optional[Callable[[StatusSnapshot], object]] = None,
    ):
        self._fetch_status = fetch_status
        self._tracker = tracker
        self._key = key
        self._batch_id = batch_id
        self._interval = interval
        self._on_update = on_update
        self._stop = asyncio.Event()
        self.fetch_count = 0
        self.failure_count = 0
        self.completed = False

    @property
    def cancelled(self) -> bool:
        return self._stop.is_set() and not self.completed

    def cancel(self) -> None:
        """Stop the loop. No further fetch is issued after this call."""
        self._stop.set()

    async def _poll_once(self) -> Optional[StatusSnapshot]:
        self.fetch_count += 1
        try:
            snapshot = await self._fetch_status(self._batch_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failure_count += 1
            logger.warning(
                "Status poll %d for %s failed (retrying in %.1fs): %s",
                self.fetch_count,
                self._batch_id,
                self._interval,
                e,
            )
            return None

        self._tracker.apply_snapshot(self._key, snapshot)
        logger.debug(
            "Batch %s status=%s %d/%d",
            self._batch_id,
            snapshot.status,
            snapshot.verified_emails,
            snapshot.total_emails,
        )
        if self._on_update is not None:
            await _maybe_await(self._on_update(snapshot))
        return snapshot

    async def _wait_tick(self) -> bool:
        """Sleep one interval. Returns True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self) -> RunSnapshot:
        while not self._stop.is_set():
            snapshot = await self._poll_once()
            if snapshot is not None and snapshot.is_completed:
                self.completed = True
                break
            if self._stop.is_set() or await self._wait_tick():
                break
        return self._tracker.snapshot(self._key)
