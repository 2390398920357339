#!/usr/bin/env python3
"""Summary statistics derived from a competition snapshot.

Uses the same earliest-solver rule as first-blood detection, so the
first-blood leader shown here agrees with the notifications sent.
"""

from __future__ import annotations

from ctfd_parser import Snapshot
from event_detector import find_first_solver


def first_solver_table(snapshot: Snapshot) -> list[dict]:
    """One row per challenge: who solved it first, and from which collection."""
    rows: list[dict] = []
    for challenge in sorted(snapshot.challenges, key=lambda c: (c.category, c.name, c.id)):
        record, source = find_first_solver(challenge.id, snapshot.solves, snapshot.submissions)
        rows.append({
            "challenge_id": challenge.id,
            "challenge": challenge.name,
            "category": challenge.category,
            "value": challenge.value,
            "solves": challenge.solve_count,
            "first_blood": record.user_name if record else None,
            "first_blood_at": record.date if record else None,
            "source": source,
        })
    return rows


def first_blood_counts(snapshot: Snapshot) -> dict[str, int]:
    counts: dict[str, int] = {}
    for row in first_solver_table(snapshot):
        user = row["first_blood"]
        if user:
            counts[user] = counts.get(user, 0) + 1
    return counts


def competition_stats(snapshot: Snapshot) -> dict:
    """Headline numbers: teams, challenges, total solves and the first-blood leader.

    Total solves is the sum of the upstream per-challenge counters, which
    may lag the solves collection.
    """
    counts = first_blood_counts(snapshot)
    leader = None
    leader_count = 0
    # Ties go to whoever reached the count first in challenge order.
    for user, count in counts.items():
        if count > leader_count:
            leader, leader_count = user, count
    return {
        "total_teams": len(snapshot.scoreboard),
        "total_challenges": len(snapshot.challenges),
        "total_solves": sum(c.solve_count for c in snapshot.challenges),
        "first_blood_leader": leader,
        "first_blood_leader_count": leader_count,
        "leader": snapshot.scoreboard[0].name if snapshot.scoreboard else None,
    }


def format_stats(stats: dict) -> str:
    leader = stats.get("first_blood_leader")
    blood = f"{leader} ({stats['first_blood_leader_count']})" if leader else "N/A"
    return " | ".join([
        f"Teams: {stats['total_teams']}",
        f"Challenges: {stats['total_challenges']}",
        f"Solves: {stats['total_solves']}",
        f"Most first bloods: {blood}",
    ])
