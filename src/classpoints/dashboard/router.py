"""Student reward endpoints: points, levels, achievements, leaderboards."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.dashboard.schemas import (
    AchievementListResponse,
    AchievementResponse,
    LeaderboardResponse,
    LevelResponse,
    PointsSummaryResponse,
)
from classpoints.dashboard.service import (
    AchievementFilters,
    get_leaderboard,
    get_points_summary,
    get_student_achievements,
    get_student_level,
)
from classpoints.database import get_session
from classpoints.redis_client import get_redis_or_none
from classpoints.rewards.types import GLOBAL_SCOPE_ID, PeriodType, Scope, ScopeKind

router = APIRouter(prefix="/api/v1", tags=["Rewards"])


def parse_scope(scope_kind: ScopeKind | None, scope_id: str | None) -> Scope | None:
    """Query-string scope: both parts or neither; GLOBAL needs no id."""
    if scope_kind is None:
        if scope_id is not None:
            raise HTTPException(status_code=400, detail="scope_id requires scope_kind")
        return None
    if scope_kind == ScopeKind.GLOBAL:
        return Scope(ScopeKind.GLOBAL, GLOBAL_SCOPE_ID)
    if not scope_id:
        raise HTTPException(status_code=400, detail=f"scope_id is required for {scope_kind.value}")
    return Scope(scope_kind, scope_id)


@router.get("/students/{student_id}/points", response_model=PointsSummaryResponse)
async def student_points(
    student_id: str,
    scope_kind: ScopeKind | None = Query(None),
    scope_id: str | None = Query(None),
    db: AsyncSession = Depends(get_session),
) -> dict:
    """Current-period totals for every granularity."""
    scope = parse_scope(scope_kind, scope_id)
    return await get_points_summary(db, student_id, scope, redis=get_redis_or_none())


@router.get("/students/{student_id}/levels", response_model=LevelResponse)
async def student_level(
    student_id: str,
    scope_kind: ScopeKind | None = Query(None),
    scope_id: str | None = Query(None),
    db: AsyncSession = Depends(get_session),
) -> dict:
    """Level and progress to the next level (GLOBAL unless a scope is given)."""
    scope = parse_scope(scope_kind, scope_id)
    return await get_student_level(db, student_id, scope, redis=get_redis_or_none())


@router.get("/students/{student_id}/achievements", response_model=AchievementListResponse)
async def student_achievements(
    student_id: str,
    unlocked: bool | None = Query(None),
    scope_kind: ScopeKind | None = Query(None),
    scope_id: str | None = Query(None),
    slug: str | None = Query(None),
    db: AsyncSession = Depends(get_session),
) -> AchievementListResponse:
    """Achievement progress, unlocked first."""
    filters = AchievementFilters(unlocked=unlocked, scope_kind=scope_kind, scope_id=scope_id, slug=slug)
    rows = await get_student_achievements(db, student_id, filters, redis=get_redis_or_none())
    achievements = [AchievementResponse(**row) for row in rows]
    return AchievementListResponse(
        achievements=achievements,
        total=len(achievements),
        unlocked=sum(1 for a in achievements if a.unlocked),
    )


@router.get("/leaderboards/{entity_type}/{entity_id}/{period}", response_model=LeaderboardResponse)
async def leaderboard(
    entity_type: ScopeKind,
    entity_id: str,
    period: PeriodType,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_session),
) -> dict:
    """Latest published snapshot for an entity and period type."""
    return await get_leaderboard(
        db, entity_type, entity_id, period, limit, offset, redis=get_redis_or_none(),
    )
