"""Deterministic leaderboard ranking.

Students are ranked by score DESC, then by the time of their most recent
achievement unlock ASC (reaching it earlier wins; students without any
unlock sort after those with one), then by student_id ASC. Ranks are
1-based and strictly sequential: equal scores never share a rank.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from classpoints.rewards.periods import as_utc, calculate_percentile

_far_future = datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


def sort_key(row: dict[str, Any]) -> tuple[int, datetime, str]:
    last_unlocked_at = row.get("last_unlocked_at")
    return (
        -int(row.get("score", 0)),
        as_utc(last_unlocked_at) if last_unlocked_at is not None else _far_future,
        str(row["student_id"]),
    )


def rank_students(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Rank students deterministically.

    Input: dicts with at least:
        - student_id: str
        - score: int
        - last_unlocked_at: datetime | None

    Output: the same dicts, sorted, augmented with ``rank`` and ``percentile``.
    """
    if not rows:
        return []

    ranked = sorted(rows, key=sort_key)
    total = len(ranked)
    for idx, row in enumerate(ranked):
        rank = idx + 1
        row["rank"] = rank
        row["percentile"] = calculate_percentile(rank, total)
    return ranked


def rank_change(rank: int, previous_rank: int | None) -> int | None:
    """Positive when the student moved up. None for new entrants."""
    if previous_rank is None:
        return None
    return previous_rank - rank
