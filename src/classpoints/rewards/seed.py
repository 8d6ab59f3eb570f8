"""Achievement seed data, upserted on startup."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.db.models import AchievementDefinition
from classpoints.db.upsert import insert_for

logger = logging.getLogger(__name__)

ACHIEVEMENT_SEED_DATA: list[dict] = [
    {
        "slug": "first_steps",
        "title": "First Steps",
        "description": "Complete your very first activity",
        "icon": "footprints",
        "criterion": "activity_count",
        "target": 1,
        "sort_order": 1,
    },
    {
        "slug": "quiz_master",
        "title": "Quiz Master",
        "description": "Complete 10 quizzes",
        "icon": "trophy",
        "criterion": "activity_count",
        "activity_type": "QUIZ",
        "target": 10,
        "sort_order": 2,
    },
    {
        "slug": "bookworm",
        "title": "Bookworm",
        "description": "Finish 5 reading activities",
        "icon": "book",
        "criterion": "activity_count",
        "activity_type": "READING",
        "target": 5,
        "sort_order": 3,
    },
    {
        "slug": "essayist",
        "title": "Essayist",
        "description": "Submit 3 essays",
        "icon": "pen",
        "criterion": "activity_count",
        "activity_type": "ESSAY",
        "target": 3,
        "sort_order": 4,
    },
    {
        "slug": "subject_explorer",
        "title": "Subject Explorer",
        "description": "Complete 5 activities in a single subject",
        "icon": "compass",
        "criterion": "activity_count",
        "scope_kind": "SUBJECT",
        "target": 5,
        "sort_order": 5,
    },
    {
        "slug": "class_regular",
        "title": "Class Regular",
        "description": "Complete 20 activities in one class",
        "icon": "calendar",
        "criterion": "activity_count",
        "scope_kind": "CLASS",
        "target": 20,
        "sort_order": 6,
    },
    {
        "slug": "assessment_ace",
        "title": "Assessment Ace",
        "description": "Complete 5 graded assessments",
        "icon": "star",
        "criterion": "activity_count",
        "source": "ASSESSMENT",
        "target": 5,
        "sort_order": 7,
    },
    {
        "slug": "century",
        "title": "Century",
        "description": "Earn 100 points",
        "icon": "medal",
        "criterion": "points_total",
        "target": 100,
        "sort_order": 8,
    },
    {
        "slug": "high_achiever",
        "title": "High Achiever",
        "description": "Earn 1,000 points",
        "icon": "crown",
        "criterion": "points_total",
        "target": 1000,
        "sort_order": 9,
    },
]


async def seed_achievements(db: AsyncSession, data: list[dict] | None = None) -> int:
    """Upsert achievement definitions. Returns number of definitions seeded."""
    seeded = 0
    for definition in data or ACHIEVEMENT_SEED_DATA:
        values = {
            "icon": None,
            "activity_type": None,
            "source": None,
            "scope_kind": None,
            "increment": 1,
            "sort_order": 0,
            "is_active": True,
            **definition,
        }
        stmt = insert_for(db, AchievementDefinition).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["slug"],
            set_={
                "title": stmt.excluded.title,
                "description": stmt.excluded.description,
                "icon": stmt.excluded.icon,
                "criterion": stmt.excluded.criterion,
                "activity_type": stmt.excluded.activity_type,
                "source": stmt.excluded.source,
                "scope_kind": stmt.excluded.scope_kind,
                "target": stmt.excluded.target,
                "increment": stmt.excluded.increment,
                "sort_order": stmt.excluded.sort_order,
                "is_active": stmt.excluded.is_active,
            },
        )
        await db.execute(stmt)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d achievement definitions", seeded)
    return seeded
