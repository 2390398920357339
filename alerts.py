#!/usr/bin/env python3
"""Outward collaborators for new notifications: sound cues and message sinks."""

from __future__ import annotations

import http.client
import json
import socket
import sys
from typing import Iterable, Protocol, TextIO
from urllib import error, request
from urllib.parse import urlparse

from ctfd_client import DEFAULT_TIMEOUT, NetworkFailure, TransportError, describe_network_error, run_with_retries
from event_detector import format_discord_message, format_event

DISCORD_WEBHOOK_HOSTS = ("discord.com", "discordapp.com", "ptb.discord.com", "canary.discord.com")
CUE_NAMES = ("first_blood", "top1_change", "rank_change")
DEFAULT_CUE = "notification"


# ---------------------------------------------------------------------------
# Sound cues
# ---------------------------------------------------------------------------

class SoundPlayer(Protocol):
    def play(self, cue: str) -> None: ...


def cue_for(event) -> str:
    kind = getattr(event, "kind", None)
    return kind if kind in CUE_NAMES else DEFAULT_CUE


class SilentPlayer:
    def play(self, cue: str) -> None:
        return None


class TerminalBell:
    """Rings the terminal bell; first blood and a new leader ring twice."""

    def __init__(self, stream: TextIO | None = None, volume: float = 0.5):
        self.stream = stream or sys.stdout
        self.volume = volume

    def play(self, cue: str) -> None:
        if self.volume <= 0:
            return
        rings = 2 if cue in ("first_blood", "top1_change") else 1
        self.stream.write("\a" * rings)
        self.stream.flush()


def dispatch_sounds(records: Iterable, player: SoundPlayer, enabled: bool = True) -> int:
    """Play one cue per unread record; returns the number of cues played."""
    if not enabled:
        return 0
    played = 0
    for record in records:
        if record.read:
            continue
        player.play(cue_for(record.event))
        played += 1
    return played


# ---------------------------------------------------------------------------
# Message sinks
# ---------------------------------------------------------------------------

def print_notifications(records: Iterable, stream: TextIO | None = None) -> None:
    stream = stream or sys.stdout
    for record in records:
        print(f"[{record.kind}] {format_event(record.event)}", file=stream)


def send_discord_message(webhook_url: str, message: str, timeout: int) -> None:
    cleaned_webhook_url = webhook_url.strip()
    if not cleaned_webhook_url:
        raise ValueError("Discord webhook URL is empty")

    parsed_webhook_url = urlparse(cleaned_webhook_url)
    if parsed_webhook_url.scheme != "https" or parsed_webhook_url.netloc not in DISCORD_WEBHOOK_HOSTS:
        raise ValueError("Webhook URL does not look like a Discord webhook URL")

    payload = json.dumps({"content": message}).encode("utf-8")
    req = request.Request(
        cleaned_webhook_url,
        data=payload,
        headers={
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "CTFd-Scoreboard-Notifier/1.0",
        },
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=timeout) as response:
            if response.status < 200 or response.status >= 300:
                raise TransportError(f"Discord webhook returned HTTP {response.status}", status=response.status)
    except error.HTTPError as exc:
        raise TransportError(f"Discord webhook returned HTTP {exc.code} {exc.reason}", status=exc.code) from exc
    except (error.URLError, TimeoutError, socket.timeout, ConnectionError, http.client.HTTPException) as exc:
        raise NetworkFailure(f"Failed to reach Discord webhook: {describe_network_error(exc)}") from exc


class DiscordSink:
    """Posts each batch of new notifications as one webhook message."""

    def __init__(
        self,
        webhook_url: str,
        instance_url: str,
        timeout: int = DEFAULT_TIMEOUT,
        retries: int = 0,
        retry_backoff_seconds: float = 2.0,
        dry_run: bool = False,
        sender=send_discord_message,
    ):
        self.webhook_url = webhook_url
        self.instance_url = instance_url
        self.timeout = timeout
        self.retries = retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.dry_run = dry_run
        self._sender = sender

    def __call__(self, records: list) -> bool:
        if not records:
            return False
        message = format_discord_message([r.event for r in records], self.instance_url)
        if self.dry_run:
            print("[dry-run] Would send Discord message:")
            print(message)
            return True
        try:
            run_with_retries(
                "Discord message send",
                lambda: self._sender(self.webhook_url, message, self.timeout),
                retries=self.retries,
                retry_backoff_seconds=self.retry_backoff_seconds,
            )
        except (TransportError, ValueError) as exc:
            print(f"Warning: failed to send Discord message: {exc}", file=sys.stderr)
            return False
        print("Discord notification sent.")
        return True
