"""Dashboard facade tests: read shapes, filters, cache fallback."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from classpoints.dashboard.service import (
    AchievementFilters,
    get_leaderboard,
    get_points_summary,
    get_student_achievements,
    get_student_level,
)
from classpoints.leaderboard.snapshot_service import generate_snapshot
from classpoints.rewards.pipeline import award_manual_points, process_completion
from classpoints.rewards.types import (
    Completion,
    PeriodType,
    PointSource,
    Scope,
    ScopeIds,
    ScopeKind,
)


class FakeRedis:
    """In-memory stand-in for the GET/SETEX subset the facade uses."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def get(self, key):
        return self.store.get(key)

    async def setex(self, key, ttl, value):
        self.store[key] = value


class BrokenSession:
    """A session whose every query fails like a dropped connection."""

    async def execute(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("server closed the connection"))


def _now_completion(source_id: str, activity_type: str = "QUIZ", **overrides) -> Completion:
    values = {
        "student_id": "stu-1",
        "source_id": source_id,
        "activity_type": activity_type,
        "class_id": "class-7b",
        "subject_id": "math",
        "completed_at": datetime.now(timezone.utc),
    }
    values.update(overrides)
    return Completion(**values)


class TestPointsSummary:
    @pytest.mark.asyncio
    async def test_global_and_every_scope(self, seeded_db):
        await process_completion(seeded_db, _now_completion("quiz-1"))
        await seeded_db.commit()

        summary = await get_points_summary(seeded_db, "stu-1")
        assert [(s["scope_kind"], s["scope_id"]) for s in summary["scopes"]] == [
            ("GLOBAL", "all"),
            ("CLASS", "class-7b"),
            ("SUBJECT", "math"),
        ]
        assert summary["scopes"][0]["totals"] == {
            "DAY": 15, "WEEK": 15, "MONTH": 15, "TERM": 15, "ALL_TIME": 15,
        }

    @pytest.mark.asyncio
    async def test_old_points_only_in_longer_periods(self, seeded_db):
        await process_completion(
            seeded_db,
            _now_completion("quiz-old", completed_at=datetime.now(timezone.utc) - timedelta(days=400)),
        )
        await seeded_db.commit()

        totals = (await get_points_summary(seeded_db, "stu-1"))["scopes"][0]["totals"]
        assert totals["ALL_TIME"] == 15
        assert totals["DAY"] == 0
        assert totals["MONTH"] == 0

    @pytest.mark.asyncio
    async def test_single_scope(self, seeded_db):
        await process_completion(seeded_db, _now_completion("quiz-1"))
        await seeded_db.commit()

        summary = await get_points_summary(seeded_db, "stu-1", Scope(ScopeKind.SUBJECT, "math"))
        assert len(summary["scopes"]) == 1
        assert summary["scopes"][0]["scope_id"] == "math"
        assert summary["scopes"][0]["totals"]["ALL_TIME"] == 15

    @pytest.mark.asyncio
    async def test_unknown_student_gets_zeroes(self, seeded_db):
        summary = await get_points_summary(seeded_db, "nobody")
        assert summary["scopes"][0]["totals"]["ALL_TIME"] == 0


class TestLevel:
    @pytest.mark.asyncio
    async def test_missing_row_is_level_one(self, seeded_db):
        level = await get_student_level(seeded_db, "nobody")
        assert level["level"] == 1
        assert level["total_experience"] == 0
        assert level["scope_kind"] == "GLOBAL"

    @pytest.mark.asyncio
    async def test_reads_stored_level(self, seeded_db):
        await award_manual_points(seeded_db, "stu-1", 300, PointSource.BONUS, "b-1", ScopeIds(class_id="c1"))
        await seeded_db.commit()

        level = await get_student_level(seeded_db, "stu-1", Scope(ScopeKind.CLASS, "c1"))
        assert level["level"] == 3
        assert level["total_experience"] == 300
        assert level["current_experience"] == 17


class TestAchievements:
    @pytest.mark.asyncio
    async def test_unlocked_first_and_filters(self, seeded_db):
        await process_completion(seeded_db, _now_completion("quiz-1"))
        await seeded_db.commit()

        rows = await get_student_achievements(seeded_db, "stu-1")
        assert rows[0]["slug"] == "first_steps"
        assert rows[0]["unlocked"] is True
        assert all(not r["unlocked"] for r in rows[1:])

        unlocked = await get_student_achievements(seeded_db, "stu-1", AchievementFilters(unlocked=True))
        assert [r["slug"] for r in unlocked] == ["first_steps"]

        scoped = await get_student_achievements(
            seeded_db, "stu-1", AchievementFilters(scope_kind=ScopeKind.SUBJECT, scope_id="math"),
        )
        assert [r["slug"] for r in scoped] == ["subject_explorer"]

        by_slug = await get_student_achievements(seeded_db, "stu-1", AchievementFilters(slug="quiz_master"))
        assert by_slug[0]["progress"] == 1
        assert by_slug[0]["target"] == 10


class TestLeaderboard:
    @pytest.mark.asyncio
    async def test_no_snapshot_yet(self, seeded_db):
        board = await get_leaderboard(seeded_db, ScopeKind.CLASS, "class-7b", PeriodType.WEEK)
        assert board["entries"] == []
        assert board["generated_at"] is None

    @pytest.mark.asyncio
    async def test_latest_snapshot_page(self, seeded_db):
        for n in range(3):
            await award_manual_points(
                seeded_db, f"stu-{n}", 10 * (n + 1), PointSource.BONUS, "b-1", ScopeIds(class_id="class-7b"),
            )
        await seeded_db.commit()
        await generate_snapshot(seeded_db, ScopeKind.CLASS, "class-7b", PeriodType.ALL_TIME)
        await seeded_db.commit()

        board = await get_leaderboard(seeded_db, ScopeKind.CLASS, "class-7b", PeriodType.ALL_TIME, limit=2)
        assert board["total_entries"] == 3
        assert [e["student_id"] for e in board["entries"]] == ["stu-2", "stu-1"]
        assert board["entries"][0]["rank_change"] is None


class TestCacheFallback:
    """Successful reads are cached; failed reads serve the cache."""

    @pytest.mark.asyncio
    async def test_serves_cached_value_when_db_fails(self, seeded_db):
        redis = FakeRedis()
        await award_manual_points(seeded_db, "stu-1", 150, PointSource.BONUS, "b-1", ScopeIds())
        await seeded_db.commit()

        fresh = await get_student_level(seeded_db, "stu-1", redis=redis)
        assert fresh["level"] == 2
        assert len(redis.store) == 1

        degraded = await get_student_level(BrokenSession(), "stu-1", redis=redis)
        assert degraded == fresh

    @pytest.mark.asyncio
    async def test_empty_default_without_cache(self):
        board = await get_leaderboard(BrokenSession(), ScopeKind.CAMPUS, "north", PeriodType.MONTH, redis=FakeRedis())
        assert board["entries"] == []
        assert board["entity_id"] == "north"

        assert await get_student_achievements(BrokenSession(), "stu-1") == []

    @pytest.mark.asyncio
    async def test_cache_entries_are_json(self, seeded_db):
        redis = FakeRedis()
        await get_points_summary(seeded_db, "stu-1", redis=redis)
        (value,) = redis.store.values()
        assert json.loads(value)["student_id"] == "stu-1"
