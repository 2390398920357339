"""Tests for turning raw CTFd payloads into snapshot records."""

import dataclasses
import math
import unittest
from datetime import datetime, timezone

from ctfd_parser import (
    build_snapshot,
    parse_challenge,
    parse_rank_entry,
    parse_solve,
    parse_submission,
    timestamp_key,
)


class TestParseRecords(unittest.TestCase):
    def test_rank_entry(self):
        entry = parse_rank_entry({"pos": 2, "account_id": 7, "name": "pwners", "score": 350})
        self.assertEqual((entry.account_id, entry.name, entry.position, entry.score), (7, "pwners", 2, 350.0))

    def test_rank_entry_without_position_skipped(self):
        self.assertIsNone(parse_rank_entry({"account_id": 7, "name": "x"}))
        self.assertIsNone(parse_rank_entry({"account_id": 7, "pos": 0}))

    def test_challenge_with_hidden_solve_count(self):
        challenge = parse_challenge({"id": 3, "name": "baby-rsa", "category": "crypto", "value": 100, "solves": None})
        self.assertEqual(challenge.solve_count, 0)
        self.assertEqual(challenge.category, "crypto")

    def test_solve_with_nested_objects(self):
        solve = parse_solve({
            "id": 11,
            "challenge": {"id": 3, "name": "baby-rsa"},
            "user": {"id": 9, "name": "alice"},
            "date": "2026-03-01T10:00:00Z",
        })
        self.assertEqual((solve.challenge_id, solve.user_id, solve.user_name), (3, 9, "alice"))

    def test_submission_with_string_user(self):
        submission = parse_submission({
            "id": 4, "challenge_id": 3, "challenge": "baby-rsa",
            "user_id": 9, "user": "alice", "type": "correct", "date": "2026-03-01T10:00:00Z",
        })
        self.assertTrue(submission.is_correct)
        self.assertEqual(submission.user_name, "alice")

    def test_submission_unknown_type_is_not_correct(self):
        submission = parse_submission({"id": 4, "challenge_id": 3, "type": "partial"})
        self.assertFalse(submission.is_correct)
        self.assertEqual(submission.user_name, "Unknown")


class TestTimestampKey(unittest.TestCase):
    def test_iso_with_z_and_offset_agree(self):
        self.assertEqual(
            timestamp_key("2026-03-01T10:00:00Z"),
            timestamp_key("2026-03-01T11:00:00+01:00"),
        )

    def test_numbers_are_epoch_seconds(self):
        self.assertEqual(timestamp_key(5), 5.0)
        self.assertEqual(timestamp_key("10"), 10.0)

    def test_unparseable_sorts_last(self):
        self.assertEqual(timestamp_key(None), math.inf)
        self.assertEqual(timestamp_key("yesterday"), math.inf)
        self.assertLess(timestamp_key("2026-03-01T10:00:00"), timestamp_key("garbage"))


class TestBuildSnapshot(unittest.TestCase):
    def test_scoreboard_ordered_by_position_and_malformed_skipped(self):
        snapshot = build_snapshot(
            [
                {"pos": 2, "account_id": 2, "name": "b", "score": 300},
                {"name": "no-id"},
                {"pos": 1, "account_id": 1, "name": "a", "score": 500},
            ],
            challenges=[{"id": 1, "name": "c1"}, "junk"],
        )
        self.assertEqual([e.account_id for e in snapshot.scoreboard], [1, 2])
        self.assertEqual(len(snapshot.challenges), 1)
        self.assertEqual(snapshot.solves, ())

    def test_snapshot_is_immutable(self):
        snapshot = build_snapshot([], fetched_at=datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))
        with self.assertRaises(dataclasses.FrozenInstanceError):
            snapshot.scoreboard = ()
        self.assertEqual(snapshot.timestamp, "2026-03-01T10:00:00Z")


if __name__ == "__main__":
    unittest.main()
