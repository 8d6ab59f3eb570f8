"""Pydantic response models for the dashboard endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


# --- Points ---


class ScopeTotalsResponse(BaseModel):
    scope_kind: str
    scope_id: str
    totals: dict[str, int]


class PointsSummaryResponse(BaseModel):
    student_id: str
    period_keys: dict[str, str]
    scopes: list[ScopeTotalsResponse]


# --- Levels ---


class LevelResponse(BaseModel):
    student_id: str
    scope_kind: str
    scope_id: str
    level: int
    current_experience: int
    experience_for_next_level: int
    total_experience: int


# --- Achievements ---


class AchievementResponse(BaseModel):
    slug: str
    title: str
    description: str
    icon: str | None = None
    scope_kind: str
    scope_id: str
    progress: int
    target: int
    unlocked: bool
    unlocked_at: datetime | None = None
    updated_at: datetime | None = None


class AchievementListResponse(BaseModel):
    achievements: list[AchievementResponse]
    total: int
    unlocked: int


# --- Leaderboards ---


class LeaderboardEntryResponse(BaseModel):
    rank: int
    student_id: str
    score: int
    previous_rank: int | None = None
    rank_change: int | None = None
    percentile: float = 0.0


class LeaderboardResponse(BaseModel):
    entity_type: str
    entity_id: str
    period_type: str
    period_key: str | None = None
    generated_at: datetime | None = None
    total_entries: int = 0
    entries: list[LeaderboardEntryResponse] = []
