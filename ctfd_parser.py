#!/usr/bin/env python3
"""Turn raw CTFd API payloads into immutable snapshot records."""

from __future__ import annotations

import math
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone


# ---------------------------------------------------------------------------
# Record types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RankEntry:
    account_id: int
    name: str
    position: int
    score: float


@dataclass(frozen=True)
class Challenge:
    id: int
    name: str
    category: str = ""
    value: int = 0
    solve_count: int = 0


@dataclass(frozen=True)
class Solve:
    id: int
    challenge_id: int
    user_id: int | None
    user_name: str
    date: str | float | None = None


@dataclass(frozen=True)
class Submission:
    id: int
    challenge_id: int
    user_id: int | None
    user_name: str
    type: str = "incorrect"
    date: str | float | None = None

    @property
    def is_correct(self) -> bool:
        return self.type == "correct"


@dataclass(frozen=True)
class Snapshot:
    """One poll cycle's worth of competition state.

    Collections are tuples so a published snapshot can never be mutated
    by a consumer; the poller replaces the whole object each cycle.
    """

    scoreboard: tuple[RankEntry, ...] = ()
    challenges: tuple[Challenge, ...] = ()
    solves: tuple[Solve, ...] = ()
    submissions: tuple[Submission, ...] = ()
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def timestamp(self) -> str:
        return self.fetched_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------

def _to_int(value) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _to_float(value) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.replace(",", "").strip())
        except ValueError:
            return None
    return None


def _name_of(value, fallback: str = "Unknown") -> str:
    """CTFd sends users and challenges either as a name string or as an object."""
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, dict):
        name = value.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()
    return fallback


def _id_of(raw: dict, key: str, nested_key: str) -> int | None:
    direct = _to_int(raw.get(key))
    if direct is not None:
        return direct
    nested = raw.get(nested_key)
    if isinstance(nested, dict):
        return _to_int(nested.get("id"))
    return None


def timestamp_key(value) -> float:
    """Sortable epoch seconds for a CTFd date; unparseable dates sort last.

    Accepts ISO-8601 strings (with ``Z`` or an offset, naive values are
    taken as UTC) and plain numbers, which are treated as epoch seconds.
    """
    if isinstance(value, bool) or value is None:
        return math.inf
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return math.inf
        try:
            return float(text)
        except ValueError:
            pass
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return math.inf
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    return math.inf


# ---------------------------------------------------------------------------
# Payload parsers
# ---------------------------------------------------------------------------

def parse_rank_entry(raw: dict) -> RankEntry | None:
    account_id = _to_int(raw.get("account_id", raw.get("id")))
    position = _to_int(raw.get("pos", raw.get("place")))
    if account_id is None or position is None or position < 1:
        return None
    score = _to_float(raw.get("score"))
    return RankEntry(
        account_id=account_id,
        name=_name_of(raw.get("name")),
        position=position,
        score=score if score is not None else 0.0,
    )


def parse_challenge(raw: dict) -> Challenge | None:
    challenge_id = _to_int(raw.get("id"))
    if challenge_id is None:
        return None
    category = raw.get("category")
    return Challenge(
        id=challenge_id,
        name=_name_of(raw.get("name"), fallback=f"challenge-{challenge_id}"),
        category=category if isinstance(category, str) else "",
        value=_to_int(raw.get("value")) or 0,
        # Hidden solve counts come back as null.
        solve_count=_to_int(raw.get("solves")) or 0,
    )


def parse_solve(raw: dict) -> Solve | None:
    solve_id = _to_int(raw.get("id"))
    challenge_id = _id_of(raw, "challenge_id", "challenge")
    if solve_id is None or challenge_id is None:
        return None
    return Solve(
        id=solve_id,
        challenge_id=challenge_id,
        user_id=_id_of(raw, "user_id", "user"),
        user_name=_name_of(raw.get("user")),
        date=raw.get("date"),
    )


def parse_submission(raw: dict) -> Submission | None:
    submission_id = _to_int(raw.get("id"))
    challenge_id = _id_of(raw, "challenge_id", "challenge")
    if submission_id is None or challenge_id is None:
        return None
    kind = raw.get("type")
    return Submission(
        id=submission_id,
        challenge_id=challenge_id,
        user_id=_id_of(raw, "user_id", "user"),
        user_name=_name_of(raw.get("user")),
        type=kind if kind in ("correct", "incorrect") else "incorrect",
        date=raw.get("date"),
    )


def _parse_many(label: str, items: list, parser) -> tuple:
    parsed = []
    skipped = 0
    for raw in items:
        record = parser(raw) if isinstance(raw, dict) else None
        if record is None:
            skipped += 1
            continue
        parsed.append(record)
    if skipped:
        print(f"Warning: skipped {skipped} malformed {label} record(s).", file=sys.stderr)
    return tuple(parsed)


def build_snapshot(
    scoreboard: list,
    challenges: list | None = None,
    solves: list | None = None,
    submissions: list | None = None,
    fetched_at: datetime | None = None,
) -> Snapshot:
    """Assemble a ``Snapshot`` from the raw collections of one poll cycle.

    The scoreboard is ordered by position as reported upstream; ranks are
    never recomputed locally.
    """
    entries = sorted(
        _parse_many("scoreboard", scoreboard or [], parse_rank_entry),
        key=lambda e: e.position,
    )
    return Snapshot(
        scoreboard=tuple(entries),
        challenges=_parse_many("challenge", challenges or [], parse_challenge),
        solves=_parse_many("solve", solves or [], parse_solve),
        submissions=_parse_many("submission", submissions or [], parse_submission),
        fetched_at=fetched_at or datetime.now(timezone.utc),
    )
