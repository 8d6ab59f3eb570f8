"""Integration: completion -> points -> aggregates -> levels -> achievements -> outbox."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from classpoints.db.models import PointEvent, PointsAggregate, RewardOutbox, StudentLevel
from classpoints.rewards import outbox
from classpoints.rewards.aggregation import AggregateKey, get_aggregate_total
from classpoints.rewards.pipeline import award_manual_points, process_completion
from classpoints.rewards.types import (
    GLOBAL_SCOPE,
    Completion,
    OutboxKind,
    PeriodType,
    PointSource,
    Scope,
    ScopeIds,
    ScopeKind,
)

NOW = datetime(2026, 9, 15, 10, 30, tzinfo=timezone.utc)
SCOPES = ScopeIds(class_id="class-7b", subject_id="math", course_id="algebra-1", campus_id="north")


def _quiz(source_id: str = "quiz-1", **overrides) -> Completion:
    values = {
        "student_id": "stu-1",
        "source_id": source_id,
        "activity_type": "QUIZ",
        "class_id": "class-7b",
        "subject_id": "math",
        "course_id": "algebra-1",
        "campus_id": "north",
        "completed_at": NOW,
    }
    values.update(overrides)
    return Completion(**values)


async def _outbox_kinds(db) -> list[str]:
    return list((await db.execute(select(RewardOutbox.kind).order_by(RewardOutbox.id))).scalars().all())


async def _level(db, scope: Scope) -> int:
    result = await db.execute(
        select(StudentLevel.level).where(
            StudentLevel.student_id == "stu-1",
            StudentLevel.scope_kind == scope.kind.value,
            StudentLevel.scope_id == scope.id,
        )
    )
    return result.scalar_one()


class TestProcessCompletion:
    """Full pipeline for one completion."""

    @pytest.mark.asyncio
    async def test_quiz_end_to_end(self, seeded_db):
        """A QUIZ with no difficulty awards 15 everywhere and unlocks first_steps."""
        db = seeded_db
        result = await process_completion(db, _quiz())
        await db.commit()

        assert result.duplicate is False
        assert result.amount == 15
        assert len(result.aggregate_keys) == 25
        assert [u.slug for u in result.unlocked] == ["first_steps"]

        totals = (await db.execute(select(PointsAggregate.total))).scalars().all()
        assert len(totals) == 25
        assert set(totals) == {15}

        assert await _level(db, GLOBAL_SCOPE) == 1
        assert await _level(db, Scope(ScopeKind.CAMPUS, "north")) == 1
        assert await _outbox_kinds(db) == [
            OutboxKind.ACHIEVEMENT_UNLOCKED.value,
            OutboxKind.POINTS_AWARDED.value,
        ]

    @pytest.mark.asyncio
    async def test_reprocessing_is_a_noop(self, seeded_db):
        """The same completion twice: one event, unchanged totals, no new outbox rows."""
        db = seeded_db
        await process_completion(db, _quiz())
        await db.commit()
        again = await process_completion(db, _quiz())
        await db.commit()

        assert again.duplicate is True
        assert again.notifications == []
        events = (await db.execute(select(func.count()).select_from(PointEvent))).scalar_one()
        assert events == 1
        key = AggregateKey("stu-1", GLOBAL_SCOPE, PeriodType.ALL_TIME, "all")
        assert await get_aggregate_total(db, key) == 15
        assert len(await _outbox_kinds(db)) == 2

    @pytest.mark.asyncio
    async def test_events_bucket_by_completion_time(self, seeded_db):
        db = seeded_db
        await process_completion(db, _quiz("late", completed_at=datetime(2026, 8, 31, 23, 0, tzinfo=timezone.utc)))
        await db.commit()

        month_keys = (await db.execute(
            select(PointsAggregate.period_key).where(PointsAggregate.period_type == "MONTH").distinct()
        )).scalars().all()
        assert month_keys == ["2026-08"]

    @pytest.mark.asyncio
    async def test_level_up_in_every_touched_scope(self, seeded_db):
        db = seeded_db
        for n in range(7):
            await process_completion(db, _quiz(f"quiz-{n}"))
        await db.commit()

        # 7 x 15 = 105 crosses the level 2 threshold (100)
        assert await _level(db, GLOBAL_SCOPE) == 2
        assert await _level(db, Scope(ScopeKind.CLASS, "class-7b")) == 2
        level_ups = (await db.execute(
            select(RewardOutbox.payload).where(RewardOutbox.kind == OutboxKind.LEVEL_UP.value)
        )).scalars().all()
        assert len(level_ups) == 5
        assert {p["new_level"] for p in level_ups} == {2}


class TestManualPoints:
    """Manual adjustments and bonuses share the pipeline."""

    @pytest.mark.asyncio
    async def test_bonus_is_deduplicated(self, seeded_db):
        db = seeded_db
        first = await award_manual_points(db, "stu-1", 50, PointSource.BONUS, "welcome", SCOPES)
        second = await award_manual_points(db, "stu-1", 50, PointSource.BONUS, "welcome", SCOPES)
        await db.commit()

        assert first.duplicate is False
        assert second.duplicate is True
        key = AggregateKey("stu-1", GLOBAL_SCOPE, PeriodType.ALL_TIME, "all")
        assert await get_aggregate_total(db, key) == 50

    @pytest.mark.asyncio
    async def test_negative_adjustment_is_a_correction(self, seeded_db):
        db = seeded_db
        await award_manual_points(db, "stu-1", 120, PointSource.BONUS, "fair", SCOPES)
        await db.commit()
        assert await _level(db, GLOBAL_SCOPE) == 2

        result = await award_manual_points(
            db, "stu-1", -40, PointSource.MANUAL_ADJUSTMENT, "fair", SCOPES, description="overcounted",
        )
        await db.commit()

        event = await db.get(PointEvent, result.event_id)
        assert event.is_correction is True
        assert event.idempotency_key is None
        key = AggregateKey("stu-1", Scope(ScopeKind.SUBJECT, "math"), PeriodType.ALL_TIME, "all")
        assert await get_aggregate_total(db, key) == 80
        assert await _level(db, GLOBAL_SCOPE) == 1
        assert result.level_ups == []

    @pytest.mark.asyncio
    async def test_explicit_correction_repeats(self, seeded_db):
        db = seeded_db
        for _ in range(2):
            result = await award_manual_points(
                db, "stu-1", 10, PointSource.MANUAL_ADJUSTMENT, "regrade-7", SCOPES, correction=True,
            )
            assert result.duplicate is False
        await db.commit()

        key = AggregateKey("stu-1", GLOBAL_SCOPE, PeriodType.ALL_TIME, "all")
        assert await get_aggregate_total(db, key) == 20

    @pytest.mark.asyncio
    async def test_bonus_unlocks_points_achievement(self, seeded_db):
        db = seeded_db
        result = await award_manual_points(db, "stu-1", 100, PointSource.BONUS, "olympiad", ScopeIds())
        assert [u.slug for u in result.unlocked] == ["century"]


class TestOutbox:
    """Outbox polling for the notification subsystem."""

    @pytest.mark.asyncio
    async def test_fetch_and_mark_delivered(self, seeded_db):
        db = seeded_db
        await process_completion(db, _quiz())
        await db.commit()

        pending = await outbox.fetch_undelivered(db)
        assert [r.kind for r in pending] == ["ACHIEVEMENT_UNLOCKED", "POINTS_AWARDED"]
        assert pending[1].payload["amount"] == 15

        assert await outbox.mark_delivered(db, [pending[0].id]) == 1
        remaining = await outbox.fetch_undelivered(db)
        assert [r.id for r in remaining] == [pending[1].id]

        assert await outbox.mark_delivered(db, [pending[0].id]) == 0
        assert await outbox.mark_delivered(db, []) == 0

    @pytest.mark.asyncio
    async def test_publish_failure_is_swallowed(self):
        class BrokenRedis:
            async def publish(self, channel, message):
                raise ConnectionError("redis down")

        await outbox.publish_records(BrokenRedis(), [{"kind": "POINTS_AWARDED"}])

    @pytest.mark.asyncio
    async def test_publish_sends_each_record(self):
        sent = []

        class FakeRedis:
            async def publish(self, channel, message):
                sent.append((channel, message))

        await outbox.publish_records(FakeRedis(), [{"kind": "A"}, {"kind": "B"}])
        assert [c for c, _ in sent] == [outbox.PUBSUB_CHANNEL] * 2
