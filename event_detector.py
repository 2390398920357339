#!/usr/bin/env python3
"""Derive rank-change and first-blood events by comparing successive snapshots."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import ClassVar, Iterable, Union

from ctfd_parser import Challenge, Snapshot, Solve, Submission, timestamp_key

MAX_DISCORD_MESSAGE_LENGTH = 1900


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RankChange:
    account_id: int
    name: str
    old_rank: int
    new_rank: int
    timestamp: str

    kind: ClassVar[str] = "rank_change"

    @property
    def key(self) -> str:
        return f"rank_{self.account_id}_{self.new_rank}_{self.timestamp}"

    @property
    def delta(self) -> int:
        return self.new_rank - self.old_rank  # negative = moved up

    def to_dict(self) -> dict:
        return {"kind": self.kind, **asdict(self)}


@dataclass(frozen=True)
class Top1Change:
    account_id: int
    name: str
    old_rank: int
    new_rank: int
    timestamp: str

    kind: ClassVar[str] = "top1_change"

    @property
    def key(self) -> str:
        return f"top1_{self.account_id}_{self.timestamp}"

    @property
    def delta(self) -> int:
        return self.new_rank - self.old_rank

    def to_dict(self) -> dict:
        return {"kind": self.kind, **asdict(self)}


@dataclass(frozen=True)
class FirstBlood:
    challenge_id: int
    challenge_name: str
    category: str
    value: int
    user_id: int | None
    user_name: str
    timestamp: str
    source: str = "solves"
    record_id: int | None = None

    kind: ClassVar[str] = "first_blood"

    @property
    def key(self) -> str:
        return f"fb_{self.challenge_id}"

    def to_dict(self) -> dict:
        return {"kind": self.kind, **asdict(self)}


DomainEvent = Union[RankChange, Top1Change, FirstBlood]

_EVENT_TYPES = {cls.kind: cls for cls in (RankChange, Top1Change, FirstBlood)}


def event_from_dict(data: dict) -> DomainEvent:
    """Rebuild an event serialised with ``to_dict``."""
    fields = dict(data)
    kind = fields.pop("kind", None)
    cls = _EVENT_TYPES.get(kind)
    if cls is None:
        raise ValueError(f"Unknown event kind: {kind!r}")
    return cls(**fields)


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def detect_rank_changes(previous: Snapshot | None, current: Snapshot) -> list[DomainEvent]:
    """Rank events for accounts present in both scoreboards, in current order.

    New entrants produce nothing. A move into position 1 is reported only
    as a ``Top1Change``.
    """
    if previous is None:
        return []
    previous_positions = {entry.account_id: entry.position for entry in previous.scoreboard}
    events: list[DomainEvent] = []
    for entry in current.scoreboard:
        old_rank = previous_positions.get(entry.account_id)
        if old_rank is None or old_rank == entry.position:
            continue
        cls = Top1Change if entry.position == 1 else RankChange
        events.append(cls(
            account_id=entry.account_id,
            name=entry.name,
            old_rank=old_rank,
            new_rank=entry.position,
            timestamp=current.timestamp,
        ))
    return events


def _earliest(records: Iterable[Solve | Submission]):
    ordered = sorted(records, key=lambda r: (timestamp_key(r.date), r.id))
    return ordered[0] if ordered else None


def find_first_solver(
    challenge_id: int,
    solves: Iterable[Solve],
    submissions: Iterable[Submission],
) -> tuple[Solve | Submission | None, str | None]:
    """Earliest correct solver of a challenge and where it came from.

    Dedicated solves win when there are any for the challenge; otherwise
    correct submissions are used. Equal timestamps fall back to the lowest
    record id.
    """
    solve = _earliest(s for s in solves if s.challenge_id == challenge_id)
    if solve is not None:
        return solve, "solves"
    submission = _earliest(
        s for s in submissions if s.challenge_id == challenge_id and s.is_correct
    )
    if submission is not None:
        return submission, "submissions"
    return None, None


def _date_text(value) -> str:
    return "" if value is None else str(value)


def detect_first_bloods(
    current: Snapshot,
    recorded: Iterable[int] = (),
) -> list[FirstBlood]:
    """First-blood events for challenges whose first blood is not yet recorded.

    *recorded* holds challenge ids already announced; those are skipped
    without looking at their solves again.
    """
    recorded_ids = set(recorded)
    found: list[tuple[float, int, FirstBlood]] = []
    for challenge in current.challenges:
        if challenge.id in recorded_ids:
            continue
        record, source = find_first_solver(challenge.id, current.solves, current.submissions)
        if record is None:
            continue
        found.append((
            timestamp_key(record.date),
            challenge.id,
            _first_blood_event(challenge, record, source),
        ))
    found.sort(key=lambda item: (item[0], item[1]))
    return [event for _, _, event in found]


def _first_blood_event(challenge: Challenge, record: Solve | Submission, source: str) -> FirstBlood:
    return FirstBlood(
        challenge_id=challenge.id,
        challenge_name=challenge.name,
        category=challenge.category,
        value=challenge.value,
        user_id=record.user_id,
        user_name=record.user_name,
        timestamp=_date_text(record.date),
        source=source,
        record_id=record.id,
    )


def detect_events(
    previous: Snapshot | None,
    current: Snapshot,
    recorded_first_bloods: Iterable[int] = (),
) -> list[DomainEvent]:
    """All new events for the pair ``(previous, current)``.

    Pure: nothing is remembered between calls. Deduplicating against events
    seen earlier belongs to the notification store.
    """
    events: list[DomainEvent] = list(detect_rank_changes(previous, current))
    events.extend(detect_first_bloods(current, recorded_first_bloods))
    return events


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def format_event(event) -> str:
    if isinstance(event, FirstBlood):
        return f"{event.user_name} got first blood on {event.challenge_name}"
    if isinstance(event, Top1Change):
        return f"{event.name} is now in first place!"
    if isinstance(event, RankChange):
        return f"{event.name} moved from #{event.old_rank} to #{event.new_rank}"
    return "New event"


def format_events_summary(events: list) -> str:
    """One-line summary of what was detected, suitable for logging."""
    parts: list[str] = []
    for cls, label in [
        (Top1Change, "top-1 change"),
        (RankChange, "rank change"),
        (FirstBlood, "first blood"),
    ]:
        count = sum(1 for e in events if isinstance(e, cls))
        if count:
            parts.append(f"{count} {label}{'s' if count != 1 else ''}")
    return ", ".join(parts) if parts else "no events"


def format_discord_message(events: list, url: str, title: str = "CTF Scoreboard Update") -> str:
    """Group events into one Discord message; leader changes and first bloods come first."""
    sections: list[str] = [f"**{title}**"]

    top1 = [e for e in events if isinstance(e, Top1Change)]
    if top1:
        sections.append("")
        sections.append("**New Leader:**")
        for e in top1:
            sections.append(f"  👑 {e.name} took #1 (was #{e.old_rank})")

    bloods = [e for e in events if isinstance(e, FirstBlood)]
    if bloods:
        sections.append("")
        sections.append("**First Blood:**")
        for e in bloods:
            category = f" [{e.category}]" if e.category else ""
            sections.append(f"  🩸 {e.user_name} on {e.challenge_name}{category} ({e.value} pts)")

    moves = sorted((e for e in events if isinstance(e, RankChange)), key=lambda e: e.new_rank)
    if moves:
        sections.append("")
        sections.append("**Rank Changes:**")
        for e in moves:
            arrow = "↑" if e.delta < 0 else "↓"
            sections.append(f"  {arrow} {e.name}: #{e.old_rank} → #{e.new_rank}")

    return _truncate("\n".join(sections), MAX_DISCORD_MESSAGE_LENGTH, url)


def _truncate(message: str, max_length: int, url: str) -> str:
    if len(message) <= max_length:
        return message
    suffix = f"\n… (truncated; see {url})"
    allowed = max(0, max_length - len(suffix))
    return message[:allowed].rstrip() + suffix
