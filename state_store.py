#!/usr/bin/env python3
"""Persist user settings and notification history as JSON files."""

from __future__ import annotations

import json
import sys
from pathlib import Path

from notification_store import PERSISTED_FEED_LIMIT, NotificationStore

DEFAULT_SETTINGS_FILE = "data/settings.json"
DEFAULT_STATE_FILE = "data/notifications.json"

# No api_key: it is supplied per run and never written to disk.
PERSISTED_SETTINGS = ("instance_url", "refresh_interval", "sound_enabled", "volume")


def _write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def _read_json(path: Path, label: str) -> dict | None:
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        print(f"Warning: failed to load {label} {path}: {exc}", file=sys.stderr)
        return None
    if not isinstance(data, dict):
        print(f"Warning: ignoring {label} {path}: expected a JSON object.", file=sys.stderr)
        return None
    return data


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def load_persisted_state(path: str | Path = DEFAULT_SETTINGS_FILE) -> dict | None:
    """Read saved settings once at start-up; None when nothing usable is stored."""
    data = _read_json(Path(path), "settings file")
    if data is None:
        return None
    settings = {key: data[key] for key in PERSISTED_SETTINGS if key in data}
    return settings or None


def save_persisted_state(settings: dict, path: str | Path = DEFAULT_SETTINGS_FILE) -> Path:
    path = Path(path)
    _write_json(path, {key: settings[key] for key in PERSISTED_SETTINGS if key in settings})
    return path


# ---------------------------------------------------------------------------
# Notification history
# ---------------------------------------------------------------------------

def save_notification_state(
    store: NotificationStore,
    path: str | Path = DEFAULT_STATE_FILE,
    feed_limit: int = PERSISTED_FEED_LIMIT,
) -> Path:
    path = Path(path)
    _write_json(path, store.to_dict(feed_limit=feed_limit))
    return path


def load_notification_state(path: str | Path = DEFAULT_STATE_FILE) -> NotificationStore:
    """Load saved history, or an empty store when there is none."""
    data = _read_json(Path(path), "notification state")
    if data is None:
        return NotificationStore()
    return NotificationStore.from_dict(data)
