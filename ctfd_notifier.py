#!/usr/bin/env python3
"""Poll a CTFd instance and announce rank changes, new leaders and first bloods."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import Callable, Iterable

from alerts import DiscordSink, SilentPlayer, SoundPlayer, TerminalBell, dispatch_sounds, print_notifications
from analytics import competition_stats, format_stats
from ctfd_client import (
    DEFAULT_RETRIES,
    DEFAULT_RETRY_BACKOFF_SECONDS,
    DEFAULT_TIMEOUT,
    CTFdClient,
    MonitorConfig,
    TransportError,
)
from ctfd_parser import Snapshot
from event_detector import FirstBlood, detect_events, format_events_summary
from notification_store import NotificationRecord, NotificationStore
from snapshot_poller import (
    DEFAULT_INTERVAL_SECONDS,
    MAX_INTERVAL_SECONDS,
    MIN_INTERVAL_SECONDS,
    CycleResult,
    SnapshotPoller,
)
from state_store import (
    DEFAULT_SETTINGS_FILE,
    load_notification_state,
    load_persisted_state,
    save_notification_state,
    save_persisted_state,
)

DEFAULT_VOLUME = 0.5


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class ScoreboardMonitor:
    """Owns the previous snapshot and turns each new one into notifications.

    Detection always runs on ``(previous, current)`` inside the poll cycle
    that produced ``current``, so the pair can never be swapped mid-way.

    First bloods found before the first complete cycle (every collection
    fetched) are history: they are recorded as read and never announced.
    A degraded cycle does not end that baseline, so solves missing from
    it are still treated as history once they show up.
    """

    def __init__(
        self,
        store: NotificationStore | None = None,
        sinks: Iterable[Callable[[list], object]] = (),
        sound_player: SoundPlayer | None = None,
        sound_enabled: bool = True,
        announce_existing: bool = False,
        state_file: Path | None = None,
        quiet: bool = False,
    ):
        self.store = store or NotificationStore()
        self.sinks = list(sinks)
        self.sound_player = sound_player or SilentPlayer()
        self.sound_enabled = sound_enabled
        self.announce_existing = announce_existing
        self.state_file = state_file
        self.quiet = quiet
        self.previous: Snapshot | None = None
        self.baselined = announce_existing

    async def handle_cycle(self, result: CycleResult) -> list[NotificationRecord]:
        """Report a finished poll cycle and process its snapshot, if any."""
        if not self.quiet:
            report_cycle(result)
        if result.snapshot is None:
            return []
        return await self.handle_snapshot(result.snapshot, complete=not result.warnings)

    async def handle_snapshot(self, snapshot: Snapshot, complete: bool = True) -> list[NotificationRecord]:
        events = detect_events(self.previous, snapshot, self.store.first_blood_challenge_ids)
        self.previous = snapshot

        history: list[NotificationRecord] = []
        if not self.baselined:
            bloods = [e for e in events if isinstance(e, FirstBlood)]
            events = [e for e in events if not isinstance(e, FirstBlood)]
            history = self.store.ingest(bloods, mark_read=True)
            if history and not self.quiet:
                print(f"Recorded {len(history)} existing first blood(s) as baseline without notifying.")
        if complete:
            self.baselined = True

        records = self.store.ingest(events)
        if not self.quiet:
            print(f"Events: {format_events_summary([r.event for r in records])}.")
        if records:
            if not self.quiet:
                print_notifications(records)
            dispatch_sounds(records, self.sound_player, enabled=self.sound_enabled)
            for sink in self.sinks:
                await asyncio.to_thread(sink, records)

        if self.state_file is not None:
            try:
                save_notification_state(self.store, self.state_file)
            except OSError as exc:
                print(f"Warning: failed to save notification state: {exc}", file=sys.stderr)
        return records + history


def report_cycle(result: CycleResult) -> None:
    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)
    if result.snapshot is None:
        kind = getattr(result.error, "kind", type(result.error).__name__)
        print(f"Warning: poll cycle failed ({kind}): {result.error}", file=sys.stderr)
        return
    snapshot = result.snapshot
    print(
        f"[{snapshot.timestamp}] status={result.status} "
        f"scoreboard={len(snapshot.scoreboard)} challenges={len(snapshot.challenges)} "
        f"solves={len(snapshot.solves)} submissions={len(snapshot.submissions)}"
    )
    print(format_stats(competition_stats(snapshot)))


def progress_printer(collection: str):
    label = collection.capitalize()

    def on_page(page_items: list, running_total: int, total_pages: int | None) -> None:
        pages = f" of ~{total_pages} pages" if total_pages else ""
        print(f"{label}: loaded page with {len(page_items)} items ({running_total} total so far{pages})")

    return on_page


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Poll a CTFd scoreboard and announce rank changes and first bloods."
    )
    parser.add_argument(
        "--instance-url",
        default=os.environ.get("CTFD_URL"),
        help="CTFd instance URL (or set CTFD_URL env var)",
    )
    parser.add_argument(
        "--api-key",
        default=os.environ.get("CTFD_API_KEY"),
        help="CTFd API token (or set CTFD_API_KEY env var)",
    )
    parser.add_argument(
        "--webhook-url",
        default=os.environ.get("DISCORD_WEBHOOK_URL"),
        help="Discord webhook URL for announcements (or set DISCORD_WEBHOOK_URL env var)",
    )
    parser.add_argument(
        "--interval-seconds",
        type=float,
        help=f"Seconds between poll cycles, {MIN_INTERVAL_SECONDS:g}-{MAX_INTERVAL_SECONDS:g} "
        f"(default: {DEFAULT_INTERVAL_SECONDS:g})",
    )
    parser.add_argument("--timeout", type=int, default=DEFAULT_TIMEOUT, help="HTTP timeout in seconds")
    parser.add_argument(
        "--retries",
        type=int,
        default=DEFAULT_RETRIES,
        help=f"Number of retries for temporary network failures (default: {DEFAULT_RETRIES})",
    )
    parser.add_argument(
        "--retry-backoff-seconds",
        type=float,
        default=DEFAULT_RETRY_BACKOFF_SECONDS,
        help=(
            "Base backoff in seconds between retries; doubles each retry "
            f"(default: {DEFAULT_RETRY_BACKOFF_SECONDS})"
        ),
    )
    parser.add_argument("--max-cycles", type=int, help="Stop after this many poll cycles")
    parser.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    parser.add_argument(
        "--test-connection",
        action="store_true",
        help="Fetch the scoreboard once to check the URL and token, then exit",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print Discord messages instead of posting them")
    parser.add_argument(
        "--announce-existing",
        action="store_true",
        help="Announce first bloods already present when monitoring starts",
    )
    parser.add_argument(
        "--sound",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Ring the terminal bell for new notifications",
    )
    parser.add_argument("--volume", type=float, help=f"Sound volume 0-1 (default: {DEFAULT_VOLUME})")
    parser.add_argument(
        "--settings-file",
        type=Path,
        default=Path(DEFAULT_SETTINGS_FILE),
        help=f"Saved settings, read at start-up (default: {DEFAULT_SETTINGS_FILE})",
    )
    parser.add_argument(
        "--save-settings",
        action="store_true",
        help="Write the effective settings (never the API key) to --settings-file",
    )
    parser.add_argument(
        "--state-file",
        type=Path,
        help="Keep notification history in this JSON file across runs",
    )
    return parser.parse_args(argv)


def apply_persisted_settings(args: argparse.Namespace, settings: dict | None) -> argparse.Namespace:
    """Fill options not given on the command line from saved settings."""
    settings = settings or {}
    if not args.instance_url and settings.get("instance_url"):
        args.instance_url = settings["instance_url"]
    if args.interval_seconds is None:
        args.interval_seconds = float(settings.get("refresh_interval", DEFAULT_INTERVAL_SECONDS))
    if args.sound is None:
        args.sound = bool(settings.get("sound_enabled", True))
    if args.volume is None:
        args.volume = float(settings.get("volume", DEFAULT_VOLUME))
    return args


def validate_args(args: argparse.Namespace) -> str | None:
    if not args.instance_url:
        return "provide --instance-url or set CTFD_URL"
    if not args.api_key:
        return "provide --api-key or set CTFD_API_KEY"
    if not MIN_INTERVAL_SECONDS <= args.interval_seconds <= MAX_INTERVAL_SECONDS:
        return f"--interval-seconds must be between {MIN_INTERVAL_SECONDS:g} and {MAX_INTERVAL_SECONDS:g}"
    if args.retries < 0:
        return "--retries must be non-negative"
    if args.retry_backoff_seconds < 0:
        return "--retry-backoff-seconds must be non-negative"
    if not 0 <= args.volume <= 1:
        return "--volume must be between 0 and 1"
    if args.max_cycles is not None and args.max_cycles <= 0:
        return "--max-cycles must be greater than 0"
    return None


def build_client(args: argparse.Namespace) -> CTFdClient:
    config = MonitorConfig(instance_url=args.instance_url, api_key=args.api_key)
    return CTFdClient.from_config(
        config,
        timeout=args.timeout,
        retries=args.retries,
        retry_backoff_seconds=args.retry_backoff_seconds,
    )


async def run_monitor(args: argparse.Namespace, client: CTFdClient) -> int:
    store = load_notification_state(args.state_file) if args.state_file else NotificationStore()
    sinks = []
    if args.webhook_url or args.dry_run:
        sinks.append(DiscordSink(
            args.webhook_url or "",
            args.instance_url,
            timeout=args.timeout,
            retries=args.retries,
            retry_backoff_seconds=args.retry_backoff_seconds,
            dry_run=args.dry_run,
        ))
    monitor = ScoreboardMonitor(
        store=store,
        sinks=sinks,
        sound_player=TerminalBell(volume=args.volume),
        sound_enabled=args.sound,
        announce_existing=args.announce_existing,
        state_file=args.state_file,
    )
    poller = SnapshotPoller(
        client,
        interval_seconds=args.interval_seconds,
        on_cycle=monitor.handle_cycle,
        on_page=progress_printer,
    )

    if args.once:
        result = await poller.poll_once()
        return 0 if result is not None and result.ok else 1

    print(f"Polling {args.instance_url} every {args.interval_seconds:g}s.")
    await poller.start(max_cycles=args.max_cycles)
    print(f"Stopped after {poller.cycles_completed} cycle(s).")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    apply_persisted_settings(args, load_persisted_state(args.settings_file))

    problem = validate_args(args)
    if problem:
        print(f"Error: {problem}", file=sys.stderr)
        return 2

    if args.save_settings:
        path = save_persisted_state(
            {
                "instance_url": args.instance_url,
                "refresh_interval": args.interval_seconds,
                "sound_enabled": args.sound,
                "volume": args.volume,
            },
            args.settings_file,
        )
        print(f"Settings saved: {path}")

    client = build_client(args)

    if args.test_connection:
        try:
            count = client.test_connection()
        except TransportError as exc:
            print(f"Connection test failed ({exc.kind}): {exc}", file=sys.stderr)
            return 1
        print(f"Connection OK: scoreboard has {count} entries.")
        return 0

    try:
        return asyncio.run(run_monitor(args, client))
    except KeyboardInterrupt:
        print("Interrupted; stopping.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
