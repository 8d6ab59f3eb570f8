"""Leaderboard snapshots: immutable ranked views per (entity, period type).

A snapshot is written once and never updated. ``previous_rank`` on each
entry comes from the immediately preceding snapshot of the same entity
and period type, so rank deltas are real movements between two
published boards.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from classpoints.config import get_settings
from classpoints.db.models import AchievementProgress, LeaderboardSnapshot, PointsAggregate
from classpoints.leaderboard.ranking import rank_change, rank_students
from classpoints.rewards.periods import as_utc, calculate_percentile, period_key
from classpoints.rewards.types import PeriodType, ScopeKind

logger = logging.getLogger(__name__)


async def get_latest_snapshot(
    db: AsyncSession,
    entity_type: ScopeKind,
    entity_id: str,
    period_type: PeriodType,
    before: datetime | None = None,
) -> LeaderboardSnapshot | None:
    """Most recent snapshot, optionally strictly before ``before``."""
    query = select(LeaderboardSnapshot).where(
        LeaderboardSnapshot.entity_type == entity_type.value,
        LeaderboardSnapshot.entity_id == entity_id,
        LeaderboardSnapshot.period_type == period_type.value,
    )
    if before is not None:
        query = query.where(LeaderboardSnapshot.generated_at < before)
    result = await db.execute(
        query.order_by(LeaderboardSnapshot.generated_at.desc(), LeaderboardSnapshot.id.desc()).limit(1)
    )
    return result.scalar_one_or_none()


def get_previous_ranks(snapshot: LeaderboardSnapshot | None) -> dict[str, int]:
    """student_id -> rank in a snapshot (empty when there is none)."""
    if snapshot is None:
        return {}
    return {entry["student_id"]: entry["rank"] for entry in snapshot.entries}


async def _load_totals(
    db: AsyncSession,
    entity_type: ScopeKind,
    entity_id: str,
    period_type: PeriodType,
    key: str,
) -> list[dict[str, Any]]:
    result = await db.execute(
        select(PointsAggregate.student_id, PointsAggregate.total).where(
            PointsAggregate.scope_kind == entity_type.value,
            PointsAggregate.scope_id == entity_id,
            PointsAggregate.period_type == period_type.value,
            PointsAggregate.period_key == key,
        )
    )
    return [{"student_id": row.student_id, "score": int(row.total)} for row in result.all()]


async def _load_last_unlocks(db: AsyncSession, student_ids: list[str]) -> dict[str, datetime]:
    """Most recent unlock time per student, for the tie-break."""
    if not student_ids:
        return {}
    result = await db.execute(
        select(
            AchievementProgress.student_id,
            func.max(AchievementProgress.unlocked_at).label("last_unlocked_at"),
        )
        .where(
            AchievementProgress.student_id.in_(student_ids),
            AchievementProgress.unlocked.is_(True),
        )
        .group_by(AchievementProgress.student_id)
    )
    return {
        row.student_id: as_utc(row.last_unlocked_at)
        for row in result.all()
        if row.last_unlocked_at is not None
    }


async def generate_snapshot(
    db: AsyncSession,
    entity_type: ScopeKind,
    entity_id: str,
    period_type: PeriodType,
    now: datetime | None = None,
    size: int | None = None,
    period_at: datetime | None = None,
) -> LeaderboardSnapshot:
    """Rank one period's aggregates for one entity and store a snapshot.

    The period is the one containing ``period_at`` (default ``now``);
    ``generated_at`` is always ``now``. Pure read of aggregates plus one
    insert; does not commit.
    """
    now = now or datetime.now(timezone.utc)
    size = size or get_settings().leaderboard_snapshot_size
    key = period_key(period_type, period_at or now)

    rows = await _load_totals(db, entity_type, entity_id, period_type, key)
    unlocks = await _load_last_unlocks(db, [r["student_id"] for r in rows])
    for row in rows:
        row["last_unlocked_at"] = unlocks.get(row["student_id"])

    ranked = rank_students(rows)
    previous = get_previous_ranks(
        await get_latest_snapshot(db, entity_type, entity_id, period_type, before=now)
    )

    entries = []
    for row in ranked[:size]:
        last_unlocked_at = row["last_unlocked_at"]
        entries.append({
            "rank": row["rank"],
            "student_id": row["student_id"],
            "score": row["score"],
            "previous_rank": previous.get(row["student_id"]),
            "last_unlocked_at": last_unlocked_at.isoformat() if last_unlocked_at else None,
        })

    snapshot = LeaderboardSnapshot(
        entity_type=entity_type.value,
        entity_id=entity_id,
        period_type=period_type.value,
        period_key=key,
        generated_at=now,
        total_entries=len(ranked),
        entries=entries,
    )
    db.add(snapshot)
    await db.flush()

    logger.debug(
        "Snapshot %s:%s %s/%s: %d entries",
        entity_type.value, entity_id, period_type.value, key, len(entries),
    )
    return snapshot


def snapshot_page(
    snapshot: LeaderboardSnapshot,
    limit: int = 50,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """Slice of a snapshot's entries with rank_change and percentile."""
    total = snapshot.total_entries or len(snapshot.entries)
    page = []
    for entry in snapshot.entries[offset:offset + limit]:
        page.append({
            **entry,
            "rank_change": rank_change(entry["rank"], entry.get("previous_rank")),
            "percentile": calculate_percentile(entry["rank"], total),
        })
    return page


async def list_entities(db: AsyncSession, period_type: PeriodType, key: str) -> list[tuple[ScopeKind, str]]:
    """Every (scope kind, scope id) with aggregates in a period."""
    result = await db.execute(
        select(PointsAggregate.scope_kind, PointsAggregate.scope_id)
        .where(
            PointsAggregate.period_type == period_type.value,
            PointsAggregate.period_key == key,
        )
        .distinct()
        .order_by(PointsAggregate.scope_kind, PointsAggregate.scope_id)
    )
    return [(ScopeKind(row.scope_kind), row.scope_id) for row in result.all()]


async def _generate_all(
    db: AsyncSession,
    period_type: PeriodType,
    now: datetime,
    period_at: datetime | None = None,
) -> int:
    entities = await list_entities(db, period_type, period_key(period_type, period_at or now))
    for entity_type, entity_id in entities:
        await generate_snapshot(db, entity_type, entity_id, period_type, now=now, period_at=period_at)
    await db.commit()
    return len(entities)


async def generate_for_period(
    session_factory: async_sessionmaker[AsyncSession],
    period_type: PeriodType,
    now: datetime | None = None,
    timeout: float | None = None,
    period_at: datetime | None = None,
) -> int | None:
    """Snapshot every entity for one period type as a single cycle.

    ``period_at`` selects a closed period (e.g. yesterday) to publish final
    standings for; snapshots are still stamped with the real ``now``.

    The whole cycle commits at once. On timeout or error it is rolled back
    and skipped: nothing is written and None is returned. The next
    scheduled run starts over.
    """
    now = now or datetime.now(timezone.utc)
    timeout = timeout or get_settings().leaderboard_timeout_seconds

    async with session_factory() as db:
        try:
            count = await asyncio.wait_for(_generate_all(db, period_type, now, period_at), timeout=timeout)
        except asyncio.TimeoutError:
            await db.rollback()
            logger.warning(
                "Leaderboard cycle %s timed out after %.0fs, skipped", period_type.value, timeout,
            )
            return None
        except Exception:
            await db.rollback()
            logger.exception("Leaderboard cycle %s failed, skipped", period_type.value)
            return None

    logger.info("Leaderboard cycle %s: %d snapshots", period_type.value, count)
    return count
