"""Level curve and level computation.

threshold(1) = 0
threshold(n) = round(base * (n - 1) ** exponent)    for n >= 2

The level for a cumulative experience value is the greatest n with
threshold(n) <= experience. Levels are always re-derived from the ALL_TIME
aggregate; they never accumulate a delta of their own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.config import get_settings
from classpoints.db.models import PointsAggregate, StudentLevel
from classpoints.db.upsert import insert_for
from classpoints.rewards.periods import ALL_TIME_KEY
from classpoints.rewards.types import PeriodType, Scope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LevelInfo:
    level: int
    current_experience: int
    experience_for_next_level: int
    total_experience: int

    def as_dict(self) -> dict:
        return {
            "level": self.level,
            "current_experience": self.current_experience,
            "experience_for_next_level": self.experience_for_next_level,
            "total_experience": self.total_experience,
        }


def level_threshold(level: int, base: int | None = None, exponent: float | None = None) -> int:
    """Cumulative experience needed to reach ``level``."""
    settings = get_settings()
    base = settings.level_curve_base if base is None else base
    exponent = settings.level_curve_exponent if exponent is None else exponent
    if level <= 1:
        return 0
    return round(base * (level - 1) ** exponent)


def derive_level(
    cumulative_experience: int,
    base: int | None = None,
    exponent: float | None = None,
    cap: int | None = None,
) -> LevelInfo:
    """Derive level info from cumulative experience. Deterministic and idempotent."""
    cap = get_settings().level_cap if cap is None else cap
    experience = max(int(cumulative_experience), 0)

    level = 1
    while level < cap and level_threshold(level + 1, base, exponent) <= experience:
        level += 1

    current_floor = level_threshold(level, base, exponent)
    if level >= cap:
        # At max level, avoid a zero-width bar
        span = max(current_floor - level_threshold(level - 1, base, exponent), 1)
    else:
        span = level_threshold(level + 1, base, exponent) - current_floor

    return LevelInfo(
        level=level,
        current_experience=experience - current_floor,
        experience_for_next_level=span,
        total_experience=int(cumulative_experience),
    )


async def get_all_time_total(db: AsyncSession, student_id: str, scope: Scope) -> int:
    """Read the ALL_TIME aggregate total for a student in a scope (0 if absent)."""
    result = await db.execute(
        select(PointsAggregate.total).where(
            PointsAggregate.student_id == student_id,
            PointsAggregate.scope_kind == scope.kind.value,
            PointsAggregate.scope_id == scope.id,
            PointsAggregate.period_type == PeriodType.ALL_TIME.value,
            PointsAggregate.period_key == ALL_TIME_KEY,
        )
    )
    return int(result.scalar_one_or_none() or 0)


async def update_student_level(
    db: AsyncSession,
    student_id: str,
    scope: Scope,
) -> tuple[LevelInfo, int]:
    """Re-derive and upsert the level row from the ALL_TIME aggregate.

    Returns (new level info, previous level). A missing row counts as level 1.
    """
    existing = await db.execute(
        select(StudentLevel.level).where(
            StudentLevel.student_id == student_id,
            StudentLevel.scope_kind == scope.kind.value,
            StudentLevel.scope_id == scope.id,
        )
    )
    old_level = existing.scalar_one_or_none() or 1

    info = derive_level(await get_all_time_total(db, student_id, scope))
    now = datetime.now(timezone.utc)

    stmt = insert_for(db, StudentLevel).values(
        student_id=student_id,
        scope_kind=scope.kind.value,
        scope_id=scope.id,
        level=info.level,
        current_experience=info.current_experience,
        experience_for_next_level=info.experience_for_next_level,
        total_experience=info.total_experience,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["student_id", "scope_kind", "scope_id"],
        set_={
            "level": stmt.excluded.level,
            "current_experience": stmt.excluded.current_experience,
            "experience_for_next_level": stmt.excluded.experience_for_next_level,
            "total_experience": stmt.excluded.total_experience,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await db.execute(stmt)

    if info.level != old_level:
        logger.info(
            "Level change for %s in %s: %d -> %d", student_id, scope, old_level, info.level,
        )
    return info, old_level
