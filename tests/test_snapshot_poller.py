"""Tests for the snapshot poller: fan-out, partial failure, backoff and scheduling."""

import asyncio
import threading
import unittest
from datetime import datetime, timezone

from ctfd_client import AuthenticationFailure, EndpointMissing, RateLimited
from snapshot_poller import SnapshotPoller

SCOREBOARD = [
    {"pos": 1, "account_id": 1, "name": "alpha", "score": 500},
    {"pos": 2, "account_id": 2, "name": "bravo", "score": 300},
]
CHALLENGES = [{"id": 1, "name": "warmup", "category": "misc", "value": 50, "solves": 2}]
SOLVES = [{"id": 1, "challenge_id": 1, "user_id": 1, "user": {"id": 1, "name": "alpha"}, "date": 5}]
SUBMISSIONS = [{"id": 1, "challenge_id": 1, "user_id": 2, "user": "bravo", "type": "correct", "date": 9}]


class FakeClient:
    """Stands in for CTFdClient; a value that is an exception gets raised."""

    def __init__(self, scoreboard=SCOREBOARD, challenges=CHALLENGES, solves=SOLVES, submissions=SUBMISSIONS):
        self.results = {
            "scoreboard": scoreboard,
            "challenges": challenges,
            "solves": solves,
            "submissions": submissions,
        }
        self.calls = {name: 0 for name in self.results}
        self.gate: threading.Event | None = None
        self._lock = threading.Lock()

    def _result(self, name, on_page=None):
        with self._lock:
            self.calls[name] += 1
        if name == "scoreboard" and self.gate is not None:
            self.gate.wait(timeout=5)
        value = self.results[name]
        if isinstance(value, Exception):
            raise value
        if on_page:
            on_page(value, len(value), 1)
        return list(value)

    def get_scoreboard(self):
        return self._result("scoreboard")

    def get_challenges(self, on_page=None):
        return self._result("challenges", on_page)

    def get_solves(self, on_page=None):
        return self._result("solves", on_page)

    def get_submissions(self, on_page=None):
        return self._result("submissions", on_page)


def _clock():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestPollOnce(unittest.IsolatedAsyncioTestCase):
    async def test_full_cycle_publishes_snapshot(self):
        published = []
        poller = SnapshotPoller(FakeClient(), on_snapshot=published.append, clock=_clock)
        result = await poller.poll_once()
        self.assertTrue(result.ok)
        self.assertEqual(result.status, "ok")
        self.assertEqual(len(published), 1)
        snapshot = published[0]
        self.assertIs(poller.latest, snapshot)
        self.assertEqual([e.name for e in snapshot.scoreboard], ["alpha", "bravo"])
        self.assertEqual(len(snapshot.challenges), 1)
        self.assertEqual(len(snapshot.solves), 1)
        self.assertEqual(len(snapshot.submissions), 1)
        self.assertEqual(snapshot.fetched_at, _clock())

    async def test_all_four_collections_fetched_once(self):
        client = FakeClient()
        await SnapshotPoller(client).poll_once()
        self.assertEqual(client.calls, {"scoreboard": 1, "challenges": 1, "solves": 1, "submissions": 1})

    async def test_missing_solves_endpoint_is_tolerated(self):
        client = FakeClient(solves=EndpointMissing("API endpoint not found: /solves", status=404))
        result = await SnapshotPoller(client).poll_once()
        self.assertTrue(result.ok)
        self.assertEqual(result.status, "degraded")
        self.assertEqual(result.snapshot.solves, ())
        self.assertEqual(len(result.snapshot.submissions), 1)
        self.assertIn("solves endpoint not available", result.warnings[0])

    async def test_any_optional_collection_failure_yields_empty(self):
        client = FakeClient(challenges=RuntimeError("boom"), submissions=AuthenticationFailure("nope", status=403))
        result = await SnapshotPoller(client).poll_once()
        self.assertTrue(result.ok)
        self.assertEqual(result.snapshot.challenges, ())
        self.assertEqual(result.snapshot.submissions, ())
        self.assertEqual(len(result.warnings), 2)

    async def test_scoreboard_failure_skips_publishing(self):
        published = []
        cycles = []
        client = FakeClient(scoreboard=AuthenticationFailure("Invalid API key.", status=401))
        poller = SnapshotPoller(client, on_snapshot=published.append, on_cycle=cycles.append)
        good = await SnapshotPoller(FakeClient()).poll_once()
        poller.latest = good.snapshot

        result = await poller.poll_once()
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, AuthenticationFailure)
        self.assertEqual(published, [])
        self.assertEqual(cycles, [result])
        self.assertEqual(poller.status, "error")
        # The last good snapshot stays available.
        self.assertIs(poller.latest, good.snapshot)

    async def test_async_snapshot_handler_awaited(self):
        seen = []

        async def handler(snapshot):
            await asyncio.sleep(0)
            seen.append(snapshot)

        await SnapshotPoller(FakeClient(), on_snapshot=handler).poll_once()
        self.assertEqual(len(seen), 1)

    async def test_page_progress_callbacks(self):
        progress = []
        poller = SnapshotPoller(
            FakeClient(),
            on_page=lambda name: (lambda items, total, pages: progress.append((name, total))),
        )
        await poller.poll_once()
        self.assertEqual(sorted(progress), [("challenges", 1), ("solves", 1), ("submissions", 1)])

    async def test_page_callbacks_run_on_event_loop_thread(self):
        threads = set()
        poller = SnapshotPoller(
            FakeClient(),
            on_page=lambda name: (lambda items, total, pages: threads.add(threading.get_ident())),
        )
        await poller.poll_once()
        self.assertEqual(threads, {threading.get_ident()})

    async def test_overlapping_cycle_is_skipped(self):
        client = FakeClient()
        client.gate = threading.Event()
        poller = SnapshotPoller(client)
        first = asyncio.create_task(poller.poll_once())
        await _wait_until(lambda: client.calls["scoreboard"] == 1)
        self.assertTrue(poller.in_flight)
        self.assertIsNone(await poller.poll_once())
        client.gate.set()
        result = await first
        self.assertTrue(result.ok)
        self.assertEqual(client.calls["scoreboard"], 1)
        self.assertFalse(poller.in_flight)


class TestRateLimitBackoff(unittest.IsolatedAsyncioTestCase):
    async def test_retry_after_used(self):
        poller = SnapshotPoller(FakeClient(scoreboard=RateLimited("slow down", retry_after=7)), interval_seconds=10)
        result = await poller.poll_once()
        self.assertTrue(result.rate_limited)
        self.assertEqual(poller.backoff_seconds, 7)

    async def test_backoff_doubles_then_resets(self):
        client = FakeClient(solves=RateLimited("slow down"))
        poller = SnapshotPoller(client, interval_seconds=10, max_backoff_seconds=25)
        await poller.poll_once()
        self.assertEqual(poller.backoff_seconds, 10)
        await poller.poll_once()
        self.assertEqual(poller.backoff_seconds, 20)
        await poller.poll_once()
        self.assertEqual(poller.backoff_seconds, 25)
        client.results["solves"] = SOLVES
        await poller.poll_once()
        self.assertEqual(poller.backoff_seconds, 0)


class TestScheduling(unittest.IsolatedAsyncioTestCase):
    async def test_runs_max_cycles(self):
        published = []
        poller = SnapshotPoller(FakeClient(), on_snapshot=published.append)
        await asyncio.wait_for(poller.start(interval_seconds=0.01, max_cycles=3), timeout=5)
        self.assertEqual(len(published), 3)
        self.assertFalse(poller.running)

    async def test_stop_cancels_pending_wait(self):
        poller = SnapshotPoller(FakeClient())
        poller.start(interval_seconds=300)
        await _wait_until(lambda: poller.cycles_completed == 1)
        await asyncio.wait_for(poller.stop(), timeout=2)
        self.assertFalse(poller.running)
        self.assertEqual(poller.cycles_completed, 1)

    async def test_stop_lets_in_flight_cycle_publish(self):
        published = []
        client = FakeClient()
        client.gate = threading.Event()
        poller = SnapshotPoller(client, on_snapshot=published.append)
        poller.start(interval_seconds=300)
        await _wait_until(lambda: client.calls["scoreboard"] == 1)
        stopping = asyncio.create_task(poller.stop())
        await asyncio.sleep(0.05)
        self.assertFalse(stopping.done())
        client.gate.set()
        await asyncio.wait_for(stopping, timeout=5)
        self.assertEqual(len(published), 1)
        self.assertEqual(client.calls["scoreboard"], 1)

    async def test_set_interval_reschedules_pending_wait(self):
        poller = SnapshotPoller(FakeClient())
        task = poller.start(interval_seconds=300, max_cycles=2)
        await _wait_until(lambda: poller.cycles_completed == 1)
        poller.set_interval(0.01)
        await asyncio.wait_for(task, timeout=5)
        self.assertEqual(poller.cycles_completed, 2)
        self.assertEqual(poller.interval_seconds, 0.01)

    async def test_start_twice_returns_same_task(self):
        poller = SnapshotPoller(FakeClient())
        first = poller.start(interval_seconds=300)
        self.assertIs(poller.start(), first)
        await poller.stop()


if __name__ == "__main__":
    unittest.main()
