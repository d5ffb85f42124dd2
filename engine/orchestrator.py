"""Top-level controller for batch verification runs.

A run is either submitted and followed over the live event stream

    idle -> submitting -> streaming -> completed | failed

or resumed by batch id and followed by polling its status

    idle -> polling -> completed | failed

Each run gets its own ``RunStateMachine``; finished machines are never
reused. Lifecycle events are published to an optional ``event_callback``
as dicts with a ``type`` key and a read-only ``snapshot``.
"""

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import AsyncIterator, Callable, Optional

from store.name_directory import NameDirectory
from store.results_api import ResultsApiClient

from . import config
from .client import VerifierClient
from .decoder import iter_lines
from .errors import EmptySubmissionError, InvalidTransitionError, TransportError, VerifierApiError
from .events import classify_line
from .extractor import extract_emails
from .listing import refresh_listing, refresh_statistics
from .models import (
    BatchListing,
    CategoryStats,
    Completed,
    ResultRecord,
    RunSnapshot,
    Started,
    StatusSnapshot,
    VerificationEvent,
)
from .poller import PollReconciler
from .tracker import AggregateTracker

logger = logging.getLogger("verifystream.orchestrator")

CANCELLED = "cancelled"


class RunState(str, Enum):
    idle = "idle"
    submitting = "submitting"
    streaming = "streaming"
    polling = "polling"
    completed = "completed"
    failed = "failed"


_TRANSITIONS = {
    RunState.idle: {RunState.submitting, RunState.polling},
    RunState.submitting: {RunState.streaming, RunState.failed},
    RunState.streaming: {RunState.completed, RunState.failed},
    RunState.polling: {RunState.completed, RunState.failed},
    RunState.completed: set(),
    RunState.failed: set(),
}


class RunStateMachine:
    """Lifecycle of exactly one run."""

    def __init__(self):
        self.state = RunState.idle
        self.history: list[RunState] = [RunState.idle]

    def transition(self, target: RunState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state.value, target.value)
        logger.debug("Run state %s -> %s", self.state.value, target.value)
        self.state = target
        self.history.append(target)

    @property
    def is_terminal(self) -> bool:
        return self.state in (RunState.completed, RunState.failed)


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class BatchOrchestrator:
    """Wires client -> decoder -> classifier -> tracker for one run at a time."""

    def __init__(
        self,
        client: VerifierClient,
        names: NameDirectory,
        *,
        results_api: Optional[ResultsApiClient] = None,
        event_callback: Optional[Callable[[dict], object]] = None,
        poll_interval: float = config.POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._client = client
        self._names = names
        self._results_api = results_api
        self._event_callback = event_callback
        self._poll_interval = poll_interval
        self.tracker = AggregateTracker(names, clock=clock)

        self._machine: Optional[RunStateMachine] = None
        self._key: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._poller: Optional[PollReconciler] = None
        self._cancel_requested = False

        self.batches: BatchListing = BatchListing()
        self.statistics: CategoryStats = CategoryStats()

    # --- reads ---

    @property
    def state(self) -> RunState:
        return self._machine.state if self._machine is not None else RunState.idle

    @property
    def machine(self) -> Optional[RunStateMachine]:
        return self._machine

    def snapshot(self) -> Optional[RunSnapshot]:
        if self._key is None:
            return None
        return self.tracker.snapshot(self._key)

    # --- lifecycle ---

    def _new_run(self) -> RunStateMachine:
        if self._machine is not None and not self._machine.is_terminal:
            raise RuntimeError(f"a run is already {self._machine.state.value}")
        if self._key is not None:
            # Keep the tracker to the current run; earlier runs live on in listings.
            self.tracker.forget(self._key)
            self._key = None
        self._cancel_requested = False
        self._machine = RunStateMachine()
        return self._machine

    async def _emit(self, event_type: str, **extra) -> None:
        if self._event_callback is None:
            return
        event = {"type": event_type, "snapshot": self.snapshot(), **extra}
        try:
            await _maybe_await(self._event_callback(event))
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Event callback failed for %s", event_type)

    def _mark_failed(self, machine: RunStateMachine, reason: str) -> None:
        self.tracker.on_failed(self._key, reason)
        if not machine.is_terminal:
            machine.transition(RunState.failed)

    async def _fail(self, machine: RunStateMachine, reason: str) -> RunSnapshot:
        self._mark_failed(machine, reason)
        await self._emit("run_failed", reason=reason)
        return self.snapshot()

    async def _fail_cancelled(self, machine: RunStateMachine) -> None:
        # Freeze counters before anything else can run, then report.
        self._mark_failed(machine, CANCELLED)
        await asyncio.shield(self._emit("run_failed", reason=CANCELLED))

    async def _complete(self) -> RunSnapshot:
        await self._emit("run_completed")
        await self.refresh()
        return self.snapshot()

    def cancel(self) -> None:
        """Abandon the active run.

        The run is marked failed immediately, so lines already read from
        the stream no longer change its counters. A cancelled stream ends
        ``submit`` with ``asyncio.CancelledError``. A cancelled poll loop
        returns from ``resume`` without issuing another fetch.
        """
        self._cancel_requested = True
        if self._machine is not None and not self._machine.is_terminal and self._key is not None:
            self._mark_failed(self._machine, CANCELLED)
        if self._poller is not None:
            self._poller.cancel()
        if self._task is not None and not self._task.done() and self._task is not _current_task():
            self._task.cancel()

    def _raise_if_cancelled(self) -> None:
        # cancel() called from inside the run's own task has no await to interrupt.
        if self._cancel_requested:
            raise asyncio.CancelledError()

    # --- streaming path ---

    async def submit_text(self, text: str, name: Optional[str] = None) -> RunSnapshot:
        """Extract addresses from pasted or file text and submit them."""
        return await self.submit(extract_emails(text), name=name)

    async def submit(self, emails: list[str], name: Optional[str] = None) -> RunSnapshot:
        """Submit a batch and follow its event stream to the end.

        Transport failures leave the run failed and are reported in the
        returned snapshot; the batch is not resubmitted.
        """
        if not emails:
            raise EmptySubmissionError("no email addresses to verify")

        machine = self._new_run()
        self._key = self.tracker.begin(len(emails), name)
        self._task = asyncio.current_task()
        machine.transition(RunState.submitting)
        logger.info("Submitting %d emails", len(emails))

        try:
            await self._emit("run_started", total=len(emails))
            self._raise_if_cancelled()
            completed = await self._consume(machine, self._client.stream_batch(emails))
            self._raise_if_cancelled()
        except asyncio.CancelledError:
            await self._fail_cancelled(machine)
            raise
        except (TransportError, VerifierApiError) as e:
            if machine.state == RunState.completed:
                logger.warning("Stream dropped after completion: %s", e)
                return await self._complete()
            return await self._fail(machine, str(e))
        finally:
            self._task = None

        if not completed:
            return await self._fail(machine, "stream closed before completion")
        return await self._complete()

    async def _first_byte(self, machine: RunStateMachine, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        async for chunk in chunks:
            if machine.state == RunState.submitting:
                machine.transition(RunState.streaming)
            yield chunk

    async def _consume(self, machine: RunStateMachine, chunks: AsyncIterator[bytes]) -> bool:
        completed = False
        async for line in iter_lines(self._first_byte(machine, chunks)):
            event = classify_line(line)
            if event is None:
                continue
            self._raise_if_cancelled()
            if await self._dispatch(machine, event):
                completed = True
        return completed

    async def _dispatch(self, machine: RunStateMachine, event: VerificationEvent) -> bool:
        """Apply one event. Returns True when it completed the run."""
        if isinstance(event, Started):
            self._key = self.tracker.on_started(self._key, event.batch_id)
            await self._emit("batch_started", batch_id=event.batch_id)
        elif isinstance(event, ResultRecord):
            if self.tracker.on_result(self._key, event):
                await self._emit("progress", email=event.email, category=event.category.value)
        elif isinstance(event, Completed):
            if self._key != event.batch_id and self.snapshot().id is None:
                # Completed without a Started: adopt its id.
                self._key = self.tracker.on_started(self._key, event.batch_id)
            if self.tracker.on_completed(self._key, event.totals, event.total_emails):
                machine.transition(RunState.completed)
                return True
        return False

    # --- polling path ---

    async def resume(self, batch_id: str, total: int = 0) -> RunSnapshot:
        """Follow an existing batch by polling its status until completion."""
        machine = self._new_run()
        self._key = self.tracker.begin(total, batch_id=batch_id)
        machine.transition(RunState.polling)

        async def _on_update(status: StatusSnapshot) -> None:
            await self._emit("status_polled", status=status.status)

        # Registered before the first await so an early cancel() reaches it.
        poller = PollReconciler(
            self._client.fetch_status,
            self.tracker,
            self._key,
            batch_id,
            interval=self._poll_interval,
            on_update=_on_update,
        )
        self._poller = poller
        try:
            await self._emit("run_started", total=total)
            logger.info("Polling batch %s every %.1fs", batch_id, self._poll_interval)
            await poller.run()
        except asyncio.CancelledError:
            await self._fail_cancelled(machine)
            raise
        finally:
            self._poller = None

        if self._cancel_requested or not poller.completed:
            return await self._fail(machine, CANCELLED)
        machine.transition(RunState.completed)
        return await self._complete()

    # --- collaborators ---

    async def refresh_batches(self) -> BatchListing:
        if self._results_api is None:
            return self.batches
        try:
            self.batches = await refresh_listing(
                self._results_api,
                self._names,
                self._client.fetch_status,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error fetching batches: %s", e)
        return self.batches

    async def refresh_statistics(self) -> CategoryStats:
        if self._results_api is None:
            return self.statistics
        try:
            self.statistics = await refresh_statistics(self._results_api)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error fetching verification statistics: %s", e)
        return self.statistics

    async def refresh(self) -> None:
        await asyncio.gather(self.refresh_batches(), self.refresh_statistics())
