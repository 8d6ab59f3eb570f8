"""Achievement engine: declarative criteria, capped progress, unlock-once.

Criteria:
  activity_count  +increment per matching completion
  points_total    +amount of each positive award

A definition may filter on activity type and source, and may be scoped
(SUBJECT, CLASS, ...), in which case progress is tracked per scope id.

Progress is written with an atomic upsert capped at the row's target, and
the unlock is a conditional UPDATE (... WHERE unlocked = false), so an
achievement unlocks exactly once even if two units race. The engine itself
does not deduplicate events: the worker only calls it after winning the
conditional insert on the event log.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.db.models import AchievementDefinition, AchievementProgress
from classpoints.db.upsert import insert_for
from classpoints.rewards.types import GLOBAL_SCOPE, PointSource, Scope, ScopeIds, ScopeKind

logger = logging.getLogger(__name__)

CRITERION_ACTIVITY_COUNT = "activity_count"
CRITERION_POINTS_TOTAL = "points_total"

_COUNTED_SOURCES = frozenset({PointSource.ACTIVITY, PointSource.ASSESSMENT})


@dataclass(frozen=True)
class AchievementTrigger:
    """Context of the award that may move achievement progress."""

    student_id: str
    source: PointSource
    source_id: str
    amount: int
    activity_type: str | None = None
    scope_ids: ScopeIds = field(default_factory=ScopeIds)


@dataclass(frozen=True)
class UnlockRecord:
    """Emitted once per unlock, for the caller to surface as a notification."""

    student_id: str
    slug: str
    title: str
    scope: Scope
    unlocked_at: datetime

    def as_payload(self) -> dict:
        return {
            "student_id": self.student_id,
            "slug": self.slug,
            "title": self.title,
            "scope_kind": self.scope.kind.value,
            "scope_id": self.scope.id,
            "unlocked_at": self.unlocked_at.isoformat(),
        }


def _matches(definition: AchievementDefinition, trigger: AchievementTrigger) -> bool:
    if definition.activity_type and (trigger.activity_type or "").upper() != definition.activity_type.upper():
        return False
    if definition.source and trigger.source.value != definition.source:
        return False
    return True


def _scope_for(definition: AchievementDefinition, trigger: AchievementTrigger) -> Scope | None:
    """Scope the progress row is kept under, or None if the trigger lacks it."""
    if not definition.scope_kind or definition.scope_kind == ScopeKind.GLOBAL.value:
        return GLOBAL_SCOPE
    kind = ScopeKind(definition.scope_kind)
    for scope in trigger.scope_ids.scopes():
        if scope.kind == kind:
            return scope
    return None


def _increment_for(definition: AchievementDefinition, trigger: AchievementTrigger) -> int:
    if definition.criterion == CRITERION_POINTS_TOTAL:
        return max(trigger.amount, 0)
    if definition.criterion == CRITERION_ACTIVITY_COUNT:
        # Manual adjustments and bonuses are not completions
        if trigger.source not in _COUNTED_SOURCES:
            return 0
        return definition.increment
    logger.warning("Unknown achievement criterion %r on %s", definition.criterion, definition.slug)
    return 0


class AchievementEngine:
    """Evaluates achievement criteria for awarded points."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self._definition_cache: list[AchievementDefinition] | None = None

    async def _load_definitions(self) -> list[AchievementDefinition]:
        """Load and cache all active definitions."""
        if self._definition_cache is None:
            result = await self.db.execute(
                select(AchievementDefinition)
                .where(AchievementDefinition.is_active.is_(True))
                .order_by(AchievementDefinition.sort_order)
            )
            self._definition_cache = list(result.scalars().all())
        return self._definition_cache

    async def evaluate(self, student_id: str, trigger: AchievementTrigger) -> list[UnlockRecord]:
        """Advance every matching definition; return the achievements unlocked now."""
        unlocked: list[UnlockRecord] = []
        for definition in await self._load_definitions():
            if not _matches(definition, trigger):
                continue
            increment = _increment_for(definition, trigger)
            if increment <= 0:
                continue
            scope = _scope_for(definition, trigger)
            if scope is None:
                continue

            record = await self._advance(student_id, definition, scope, increment)
            if record is not None:
                unlocked.append(record)
        return unlocked

    async def _advance(
        self,
        student_id: str,
        definition: AchievementDefinition,
        scope: Scope,
        increment: int,
    ) -> UnlockRecord | None:
        now = datetime.now(timezone.utc)

        stmt = insert_for(self.db, AchievementProgress).values(
            student_id=student_id,
            definition_id=definition.id,
            scope_kind=scope.kind.value,
            scope_id=scope.id,
            progress=min(increment, definition.target),
            target=definition.target,
            unlocked=False,
            updated_at=now,
        )
        new_progress = AchievementProgress.progress + increment
        stmt = stmt.on_conflict_do_update(
            index_elements=["student_id", "definition_id", "scope_kind", "scope_id"],
            set_={
                "progress": case(
                    (new_progress > AchievementProgress.target, AchievementProgress.target),
                    else_=new_progress,
                ),
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.db.execute(stmt)

        result = await self.db.execute(
            update(AchievementProgress)
            .where(
                AchievementProgress.student_id == student_id,
                AchievementProgress.definition_id == definition.id,
                AchievementProgress.scope_kind == scope.kind.value,
                AchievementProgress.scope_id == scope.id,
                AchievementProgress.unlocked.is_(False),
                AchievementProgress.progress >= AchievementProgress.target,
            )
            .values(unlocked=True, unlocked_at=now, updated_at=now)
            .returning(AchievementProgress.id)
            .execution_options(synchronize_session=False)
        )
        if result.scalar_one_or_none() is None:
            return None

        logger.info("Achievement unlocked: %s for %s (%s)", definition.slug, student_id, scope)
        return UnlockRecord(
            student_id=student_id,
            slug=definition.slug,
            title=definition.title,
            scope=scope,
            unlocked_at=now,
        )


async def reset_progress(
    db: AsyncSession,
    student_id: str,
    slug: str,
    scope: Scope | None = None,
) -> int:
    """Explicit reset: progress back to 0. Never clears ``unlocked``.

    Returns the number of progress rows reset.
    """
    definition = (
        await db.execute(select(AchievementDefinition).where(AchievementDefinition.slug == slug))
    ).scalar_one_or_none()
    if definition is None:
        logger.warning("Achievement not found: %s", slug)
        return 0

    stmt = (
        update(AchievementProgress)
        .where(
            AchievementProgress.student_id == student_id,
            AchievementProgress.definition_id == definition.id,
        )
        .values(progress=0, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    if scope is not None:
        stmt = stmt.where(
            AchievementProgress.scope_kind == scope.kind.value,
            AchievementProgress.scope_id == scope.id,
        )
    result = await db.execute(stmt)
    return result.rowcount or 0
