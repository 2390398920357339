#!/usr/bin/env python3
"""Periodically fetch a full competition snapshot from CTFd."""

from __future__ import annotations

import asyncio
import inspect
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from ctfd_client import CTFdClient, EndpointMissing, PageCallback, RateLimited, TransportError
from ctfd_parser import Snapshot, build_snapshot

DEFAULT_INTERVAL_SECONDS = 10.0
MIN_INTERVAL_SECONDS = 5.0
MAX_INTERVAL_SECONDS = 300.0
MAX_RATE_LIMIT_BACKOFF_SECONDS = 300.0

PAGED_COLLECTIONS = ("challenges", "solves", "submissions")


@dataclass
class CycleResult:
    """Outcome of one poll cycle; ``snapshot`` is None when the cycle failed."""

    snapshot: Snapshot | None = None
    warnings: list[str] = field(default_factory=list)
    error: Exception | None = None
    rate_limited: bool = False
    retry_after: float | None = None

    @property
    def ok(self) -> bool:
        return self.snapshot is not None

    @property
    def status(self) -> str:
        if self.snapshot is None:
            return "error"
        return "degraded" if self.warnings else "ok"


SnapshotHandler = Callable[[Snapshot], "Awaitable[None] | None"]
ResultHandler = Callable[[CycleResult], "Awaitable[None] | None"]


async def _call(handler, arg) -> None:
    if handler is None:
        return
    result = handler(arg)
    if inspect.isawaitable(result):
        await result


class SnapshotPoller:
    """Run poll cycles on an interval, one cycle at a time.

    Each cycle fetches the scoreboard and the three paginated collections
    together and waits for all four to settle. A failed collection becomes
    empty for that cycle and is recorded as a warning; a failed scoreboard
    fails the cycle and nothing is published.

    ``stop()`` cancels the wait between cycles only. A cycle already in
    flight runs to completion and its snapshot is still published.
    """

    def __init__(
        self,
        client: CTFdClient,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        on_snapshot: SnapshotHandler | None = None,
        on_cycle: ResultHandler | None = None,
        on_page: Callable[[str], PageCallback] | None = None,
        max_backoff_seconds: float = MAX_RATE_LIMIT_BACKOFF_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ):
        self.client = client
        self.interval_seconds = interval_seconds
        self.on_snapshot = on_snapshot
        self.on_cycle = on_cycle
        self.on_page = on_page
        self.max_backoff_seconds = max_backoff_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.latest: Snapshot | None = None
        self.last_result: CycleResult | None = None
        self.status = "idle"
        self.cycles_completed = 0
        self.backoff_seconds = 0.0

        self._in_flight = False
        self._task: asyncio.Task | None = None
        self._wake: asyncio.Event | None = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    # -----------------------------------------------------------------------
    # One cycle
    # -----------------------------------------------------------------------

    async def fetch_cycle(self) -> CycleResult:
        """Fetch all four collections concurrently and build the cycle result."""
        loop = asyncio.get_running_loop()
        fetchers = {
            "scoreboard": (self.client.get_scoreboard,),
            "challenges": (self.client.get_challenges, self._page_callback("challenges", loop)),
            "solves": (self.client.get_solves, self._page_callback("solves", loop)),
            "submissions": (self.client.get_submissions, self._page_callback("submissions", loop)),
        }
        names = list(fetchers)
        settled = await asyncio.gather(
            *(asyncio.to_thread(*fetchers[name]) for name in names),
            return_exceptions=True,
        )
        outcomes = dict(zip(names, settled))

        result = CycleResult()
        for name, outcome in outcomes.items():
            if isinstance(outcome, RateLimited):
                result.rate_limited = True
                if outcome.retry_after is not None:
                    result.retry_after = max(result.retry_after or 0.0, outcome.retry_after)

        scoreboard = outcomes["scoreboard"]
        if isinstance(scoreboard, BaseException):
            result.error = scoreboard
            return result

        collections: dict[str, list] = {}
        for name in PAGED_COLLECTIONS:
            outcome = outcomes[name]
            if isinstance(outcome, BaseException):
                collections[name] = []
                result.warnings.append(_describe_failure(name, outcome))
            else:
                collections[name] = outcome

        result.snapshot = build_snapshot(
            scoreboard,
            collections["challenges"],
            collections["solves"],
            collections["submissions"],
            fetched_at=self._clock(),
        )
        return result

    def _page_callback(self, name: str, loop: asyncio.AbstractEventLoop) -> PageCallback | None:
        # Fetches run in worker threads; progress is handed back to the loop.
        if not self.on_page:
            return None
        callback = self.on_page(name)

        def on_page(page_items: list, running_total: int, total_pages: int | None) -> None:
            loop.call_soon_threadsafe(callback, list(page_items), running_total, total_pages)

        return on_page

    async def poll_once(self) -> CycleResult | None:
        """Run a single cycle unless one is already running (then returns None)."""
        if self._in_flight:
            print("Warning: poll cycle already in progress; skipping.", file=sys.stderr)
            return None
        self._in_flight = True
        try:
            try:
                result = await self.fetch_cycle()
            except Exception as exc:
                result = CycleResult(error=exc)

            self._update_backoff(result)
            self.last_result = result
            self.status = result.status
            if result.snapshot is not None:
                # Replaced as a whole; consumers never see a partial snapshot.
                self.latest = result.snapshot
                await _call(self.on_snapshot, result.snapshot)
            await _call(self.on_cycle, result)
            self.cycles_completed += 1
            return result
        finally:
            self._in_flight = False

    def _update_backoff(self, result: CycleResult) -> None:
        if not result.rate_limited:
            self.backoff_seconds = 0.0
            return
        if result.retry_after is not None:
            self.backoff_seconds = min(result.retry_after, self.max_backoff_seconds)
        elif self.backoff_seconds:
            self.backoff_seconds = min(self.backoff_seconds * 2, self.max_backoff_seconds)
        else:
            self.backoff_seconds = min(self.interval_seconds, self.max_backoff_seconds)
        print(
            f"Warning: rate limited by the scoring service; backing off {self.backoff_seconds:.1f}s "
            "before the next cycle.",
            file=sys.stderr,
        )

    # -----------------------------------------------------------------------
    # Scheduling
    # -----------------------------------------------------------------------

    def start(self, interval_seconds: float | None = None, max_cycles: int | None = None) -> asyncio.Task:
        """Begin polling immediately, then every *interval_seconds*.

        Must be called from a running event loop.
        """
        if interval_seconds is not None:
            self.interval_seconds = interval_seconds
        if self.running:
            return self._task
        self._stopping = False
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run(max_cycles))
        return self._task

    async def _run(self, max_cycles: int | None) -> None:
        cycles = 0
        while not self._stopping:
            try:
                await self.poll_once()
            except Exception as exc:
                print(f"Warning: snapshot handler failed: {exc}", file=sys.stderr)
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            await self._wait_for_next_cycle()

    async def _wait_for_next_cycle(self) -> None:
        # A wake-up during the wait means the interval changed or stop() was
        # called; the timer restarts from zero with the current interval.
        while not self._stopping:
            delay = self.interval_seconds + self.backoff_seconds
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                return
            self._wake.clear()

    def set_interval(self, interval_seconds: float) -> None:
        """Change the polling interval, rescheduling the pending wait."""
        self.interval_seconds = interval_seconds
        if self._wake is not None:
            self._wake.set()

    async def stop(self) -> None:
        """Cancel the timer and wait for any in-flight cycle to finish."""
        self._stopping = True
        if self._wake is not None:
            self._wake.set()
        task = self._task
        if task is not None:
            await task
        self._task = None


def _describe_failure(name: str, exc: BaseException) -> str:
    if isinstance(exc, EndpointMissing):
        return f"{name} endpoint not available on this instance"
    if isinstance(exc, TransportError):
        return f"{name} fetch failed ({exc.kind}): {exc}"
    return f"{name} fetch failed: {exc}"
