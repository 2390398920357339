#!/usr/bin/env python3
"""Notification feed with bounded event histories and unread tracking."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Iterable

from event_detector import FirstBlood, RankChange, Top1Change, event_from_dict

HISTORY_LIMIT = 50
PERSISTED_FEED_LIMIT = 200


@dataclass
class NotificationRecord:
    id: str
    event: object
    read: bool = False

    @property
    def kind(self) -> str:
        return getattr(self.event, "kind", "notification")

    def to_dict(self) -> dict:
        return {"id": self.id, "read": self.read, "event": self.event.to_dict()}


class NotificationStore:
    """Ingests detected events and keeps what the user has and has not seen.

    The feed is newest-first. The unread count is derived from the feed on
    every access so it cannot drift from the records themselves. The set
    of challenges with a recorded first blood is kept apart from the
    bounded first-blood log and never shrinks.
    """

    def __init__(self, history_limit: int = HISTORY_LIMIT, feed_limit: int | None = None):
        self.history_limit = history_limit
        self.feed_limit = feed_limit
        self.notifications: list[NotificationRecord] = []
        self.rank_changes: list = []
        self.first_bloods: list[FirstBlood] = []
        self._first_blood_challenges: set[int] = set()
        self._by_id: dict[str, NotificationRecord] = {}

    @property
    def unread_count(self) -> int:
        return sum(1 for record in self.notifications if not record.read)

    @property
    def first_blood_challenge_ids(self) -> frozenset[int]:
        return frozenset(self._first_blood_challenges)

    def is_known(self, event) -> bool:
        if isinstance(event, FirstBlood) and event.challenge_id in self._first_blood_challenges:
            return True
        return event.key in self._by_id

    def ingest(self, events: Iterable, mark_read: bool = False) -> list[NotificationRecord]:
        """Add the genuinely new *events* to the front of the feed.

        Events already present (same key, or a first blood for a challenge
        that already has one) are ignored. Returns the records created,
        in the order the events were given. ``mark_read`` records them as
        already acknowledged, which is how a baseline is loaded silently.
        """
        created: list[NotificationRecord] = []
        for event in events:
            if self.is_known(event):
                continue
            record = NotificationRecord(id=event.key, event=event, read=mark_read)
            self._by_id[record.id] = record
            created.append(record)
            if isinstance(event, FirstBlood):
                self._first_blood_challenges.add(event.challenge_id)

        if not created:
            return created

        # A batch keeps its detection order at the head of the feed.
        self.notifications[:0] = created
        new_rank = [r.event for r in created if isinstance(r.event, (RankChange, Top1Change))]
        new_blood = [r.event for r in created if isinstance(r.event, FirstBlood)]
        self.rank_changes = (new_rank + self.rank_changes)[: self.history_limit]
        self.first_bloods = (new_blood + self.first_bloods)[: self.history_limit]
        if self.feed_limit is not None:
            self.truncate_feed(self.feed_limit)
        return created

    def mark_read(self, notification_id: str) -> bool:
        """Mark one record read; returns False when the id is unknown or already read."""
        record = self._by_id.get(notification_id)
        if record is None or record.read:
            return False
        record.read = True
        return True

    def mark_all_read(self) -> int:
        changed = 0
        for record in self.notifications:
            if not record.read:
                record.read = True
                changed += 1
        return changed

    def truncate_feed(self, limit: int) -> None:
        for record in self.notifications[limit:]:
            self._by_id.pop(record.id, None)
        del self.notifications[limit:]

    def recent(self, limit: int = 10) -> list[NotificationRecord]:
        return self.notifications[:limit]

    # -----------------------------------------------------------------------
    # Serialisation
    # -----------------------------------------------------------------------

    def to_dict(self, feed_limit: int | None = PERSISTED_FEED_LIMIT) -> dict:
        feed = self.notifications if feed_limit is None else self.notifications[:feed_limit]
        return {
            "notifications": [record.to_dict() for record in feed],
            "rank_changes": [event.to_dict() for event in self.rank_changes],
            "first_bloods": [event.to_dict() for event in self.first_bloods],
            "first_blood_challenges": sorted(self._first_blood_challenges),
        }

    @classmethod
    def from_dict(cls, data: dict, history_limit: int = HISTORY_LIMIT) -> "NotificationStore":
        store = cls(history_limit=history_limit)
        for raw in data.get("notifications", []):
            try:
                record = NotificationRecord(
                    id=raw["id"], event=event_from_dict(raw["event"]), read=bool(raw.get("read"))
                )
            except (KeyError, TypeError, ValueError) as exc:
                print(f"Warning: dropping unreadable notification record: {exc}", file=sys.stderr)
                continue
            store.notifications.append(record)
            store._by_id[record.id] = record
        store.rank_changes = _events_from(data.get("rank_changes", []))[:history_limit]
        store.first_bloods = _events_from(data.get("first_bloods", []))[:history_limit]
        store._first_blood_challenges = {
            int(cid) for cid in data.get("first_blood_challenges", []) if isinstance(cid, int)
        }
        store._first_blood_challenges.update(e.challenge_id for e in store.first_bloods)
        store._first_blood_challenges.update(
            r.event.challenge_id for r in store.notifications if isinstance(r.event, FirstBlood)
        )
        return store


def _events_from(items: list) -> list:
    events = []
    for raw in items:
        try:
            events.append(event_from_dict(raw))
        except (TypeError, ValueError) as exc:
            print(f"Warning: dropping unreadable event: {exc}", file=sys.stderr)
    return events
