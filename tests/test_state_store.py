"""Tests for settings and notification-history persistence."""

import io
import json
import tempfile
import unittest
from contextlib import redirect_stderr
from pathlib import Path

from event_detector import FirstBlood
from notification_store import NotificationStore
from state_store import (
    load_notification_state,
    load_persisted_state,
    save_notification_state,
    save_persisted_state,
)


class TestSettings(unittest.TestCase):
    def test_missing_file_gives_none(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertIsNone(load_persisted_state(Path(tmpdir) / "nope.json"))

    def test_api_key_never_written(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "nested" / "settings.json"
            save_persisted_state(
                {"instance_url": "https://ctf.example.com", "api_key": "secret", "refresh_interval": 20, "volume": 0.3},
                path,
            )
            raw = path.read_text(encoding="utf-8")
            self.assertNotIn("secret", raw)
            self.assertEqual(
                load_persisted_state(path),
                {"instance_url": "https://ctf.example.com", "refresh_interval": 20, "volume": 0.3},
            )

    def test_corrupt_file_warns_and_gives_none(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "settings.json"
            path.write_text("{broken", encoding="utf-8")
            err = io.StringIO()
            with redirect_stderr(err):
                self.assertIsNone(load_persisted_state(path))
            self.assertIn("Warning", err.getvalue())

    def test_non_object_ignored(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "settings.json"
            path.write_text(json.dumps([1, 2]), encoding="utf-8")
            with redirect_stderr(io.StringIO()):
                self.assertIsNone(load_persisted_state(path))


class TestNotificationState(unittest.TestCase):
    def test_save_and_load(self):
        store = NotificationStore()
        store.ingest([FirstBlood(5, "heap", "pwn", 500, 1, "alice", "2026-03-01T10:00:00Z")])
        with tempfile.TemporaryDirectory() as tmpdir:
            path = save_notification_state(store, Path(tmpdir) / "notifications.json")
            restored = load_notification_state(path)
        self.assertEqual(restored.unread_count, 1)
        self.assertEqual(restored.first_blood_challenge_ids, frozenset({5}))

    def test_missing_state_gives_empty_store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            store = load_notification_state(Path(tmpdir) / "missing.json")
        self.assertEqual(store.notifications, [])


if __name__ == "__main__":
    unittest.main()
