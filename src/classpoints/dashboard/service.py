"""Dashboard query facade: read-only views over aggregates, levels,
achievements and leaderboard snapshots.

Nothing here recomputes. Successful reads are cached in Redis; when a DB
read fails the last cached value is served, and when there is none an
empty default of the same shape is returned.
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import redis.asyncio as aioredis
import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.config import get_settings
from classpoints.db.models import AchievementDefinition, AchievementProgress, PointsAggregate, StudentLevel
from classpoints.leaderboard.snapshot_service import get_latest_snapshot, snapshot_page
from classpoints.rewards.levels import derive_level
from classpoints.rewards.periods import current_period_keys
from classpoints.rewards.types import GLOBAL_SCOPE, PeriodType, Scope, ScopeKind

logger = structlog.get_logger()

POINTS_CACHE_KEY = "rewards:points:{student_id}:{scope}"
LEVEL_CACHE_KEY = "rewards:level:{student_id}:{scope}"
ACHIEVEMENTS_CACHE_KEY = "rewards:achievements:{student_id}:{filters}"
LEADERBOARD_CACHE_KEY = "rewards:leaderboard:{entity_type}:{entity_id}:{period}:{limit}:{offset}"


@dataclass(frozen=True)
class AchievementFilters:
    unlocked: bool | None = None
    scope_kind: ScopeKind | None = None
    scope_id: str | None = None
    slug: str | None = None

    def cache_fragment(self) -> str:
        return ",".join(
            "" if value is None else str(getattr(value, "value", value))
            for value in (self.unlocked, self.scope_kind, self.scope_id, self.slug)
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


async def _cache_get(redis: aioredis.Redis | None, key: str) -> Any | None:
    if redis is None:
        return None
    try:
        cached = await redis.get(key)
    except Exception:
        logger.warning("dashboard_cache_read_failed", cache_key=key, exc_info=True)
        return None
    return json.loads(cached) if cached else None


async def _cache_set(redis: aioredis.Redis | None, key: str, value: Any) -> None:
    if redis is None:
        return
    try:
        await redis.setex(key, get_settings().dashboard_cache_ttl_seconds, json.dumps(value, default=str))
    except Exception:
        logger.warning("dashboard_cache_write_failed", cache_key=key, exc_info=True)


async def _read_through(
    redis: aioredis.Redis | None,
    cache_key: str,
    loader: Callable[[], Awaitable[Any]],
    default: Any,
) -> Any:
    """Run a DB read, caching success and falling back to cache on failure."""
    try:
        value = await loader()
    except (SQLAlchemyError, OSError, TimeoutError):
        logger.warning("dashboard_read_fallback", cache_key=cache_key, exc_info=True)
        cached = await _cache_get(redis, cache_key)
        return cached if cached is not None else default

    await _cache_set(redis, cache_key, value)
    return value


# ---------------------------------------------------------------------------
# Points
# ---------------------------------------------------------------------------


def _empty_totals() -> dict[str, int]:
    return {pt.value: 0 for pt in PeriodType}


async def get_points_summary(
    db: AsyncSession,
    student_id: str,
    scope: Scope | None = None,
    redis: aioredis.Redis | None = None,
) -> dict:
    """Totals for the current period of every granularity.

    With no scope: GLOBAL plus every scope the student has points in.
    """
    keys = current_period_keys()
    period_keys = {pt.value: key for pt, key in keys.items()}
    default_scope = scope or GLOBAL_SCOPE
    default = {
        "student_id": student_id,
        "period_keys": period_keys,
        "scopes": [{
            "scope_kind": default_scope.kind.value,
            "scope_id": default_scope.id,
            "totals": _empty_totals(),
        }],
    }

    async def load() -> dict:
        query = select(PointsAggregate).where(
            PointsAggregate.student_id == student_id,
            or_(*(
                and_(PointsAggregate.period_type == pt.value, PointsAggregate.period_key == key)
                for pt, key in keys.items()
            )),
        )
        if scope is not None:
            query = query.where(
                PointsAggregate.scope_kind == scope.kind.value,
                PointsAggregate.scope_id == scope.id,
            )
        rows = (await db.execute(query)).scalars().all()

        by_scope: dict[tuple[str, str], dict[str, int]] = {
            (default_scope.kind.value, default_scope.id): _empty_totals(),
        }
        for row in rows:
            totals = by_scope.setdefault((row.scope_kind, row.scope_id), _empty_totals())
            totals[row.period_type] = int(row.total)

        ordered = sorted(by_scope.items(), key=lambda item: (item[0][0] != ScopeKind.GLOBAL.value, item[0]))
        return {
            "student_id": student_id,
            "period_keys": period_keys,
            "scopes": [
                {"scope_kind": kind, "scope_id": scope_id, "totals": totals}
                for (kind, scope_id), totals in ordered
            ],
        }

    cache_key = POINTS_CACHE_KEY.format(student_id=student_id, scope=scope or "any")
    return await _read_through(redis, cache_key, load, default)


# ---------------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------------


async def get_student_level(
    db: AsyncSession,
    student_id: str,
    scope: Scope | None = None,
    redis: aioredis.Redis | None = None,
) -> dict:
    """Level info for a student in a scope (GLOBAL by default)."""
    scope = scope or GLOBAL_SCOPE
    default = {
        "student_id": student_id,
        "scope_kind": scope.kind.value,
        "scope_id": scope.id,
        **derive_level(0).as_dict(),
    }

    async def load() -> dict:
        result = await db.execute(
            select(StudentLevel).where(
                StudentLevel.student_id == student_id,
                StudentLevel.scope_kind == scope.kind.value,
                StudentLevel.scope_id == scope.id,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            return default
        return {
            "student_id": student_id,
            "scope_kind": row.scope_kind,
            "scope_id": row.scope_id,
            "level": row.level,
            "current_experience": int(row.current_experience),
            "experience_for_next_level": int(row.experience_for_next_level),
            "total_experience": int(row.total_experience),
        }

    cache_key = LEVEL_CACHE_KEY.format(student_id=student_id, scope=scope)
    return await _read_through(redis, cache_key, load, default)


# ---------------------------------------------------------------------------
# Achievements
# ---------------------------------------------------------------------------


async def get_student_achievements(
    db: AsyncSession,
    student_id: str,
    filters: AchievementFilters | None = None,
    redis: aioredis.Redis | None = None,
) -> list[dict]:
    """Achievement progress rows, unlocked first, most recently updated first."""
    filters = filters or AchievementFilters()

    async def load() -> list[dict]:
        query = (
            select(AchievementProgress)
            .join(AchievementDefinition, AchievementProgress.definition_id == AchievementDefinition.id)
            .where(AchievementProgress.student_id == student_id)
        )
        if filters.unlocked is not None:
            query = query.where(AchievementProgress.unlocked.is_(filters.unlocked))
        if filters.scope_kind is not None:
            query = query.where(AchievementProgress.scope_kind == filters.scope_kind.value)
        if filters.scope_id is not None:
            query = query.where(AchievementProgress.scope_id == filters.scope_id)
        if filters.slug is not None:
            query = query.where(AchievementDefinition.slug == filters.slug)
        query = query.order_by(
            AchievementProgress.unlocked.desc(),
            AchievementProgress.updated_at.desc(),
            AchievementProgress.id.desc(),
        )

        rows = (await db.execute(query)).unique().scalars().all()
        return [
            {
                "slug": row.definition.slug,
                "title": row.definition.title,
                "description": row.definition.description,
                "icon": row.definition.icon,
                "scope_kind": row.scope_kind,
                "scope_id": row.scope_id,
                "progress": row.progress,
                "target": row.target,
                "unlocked": row.unlocked,
                "unlocked_at": _iso(row.unlocked_at),
                "updated_at": _iso(row.updated_at),
            }
            for row in rows
        ]

    cache_key = ACHIEVEMENTS_CACHE_KEY.format(student_id=student_id, filters=filters.cache_fragment())
    return await _read_through(redis, cache_key, load, [])


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------


async def get_leaderboard(
    db: AsyncSession,
    entity_type: ScopeKind,
    entity_id: str,
    period_type: PeriodType,
    limit: int = 50,
    offset: int = 0,
    redis: aioredis.Redis | None = None,
) -> dict:
    """Page of the latest snapshot with rank deltas and percentiles."""
    default = {
        "entity_type": entity_type.value,
        "entity_id": entity_id,
        "period_type": period_type.value,
        "period_key": None,
        "generated_at": None,
        "total_entries": 0,
        "entries": [],
    }

    async def load() -> dict:
        snapshot = await get_latest_snapshot(
            db, entity_type, entity_id, period_type, before=None,
        )
        if snapshot is None:
            return default
        return {
            "entity_type": snapshot.entity_type,
            "entity_id": snapshot.entity_id,
            "period_type": snapshot.period_type,
            "period_key": snapshot.period_key,
            "generated_at": _iso(snapshot.generated_at),
            "total_entries": snapshot.total_entries,
            "entries": snapshot_page(snapshot, limit, offset),
        }

    cache_key = LEADERBOARD_CACHE_KEY.format(
        entity_type=entity_type.value,
        entity_id=entity_id,
        period=period_type.value,
        limit=limit,
        offset=offset,
    )
    return await _read_through(redis, cache_key, load, default)
