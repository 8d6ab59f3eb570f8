"""Reward pipeline for one unit of work.

    points -> point event (conditional insert) -> aggregate fan-out
           -> level re-derivation -> achievement evaluation -> outbox

Nothing here commits. The caller owns the transaction so that every step
for one unit lands atomically or not at all.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.db.models import PointEvent
from classpoints.rewards import outbox
from classpoints.rewards.achievements import AchievementEngine, AchievementTrigger, UnlockRecord
from classpoints.rewards.aggregation import AggregateKey, apply_event
from classpoints.rewards.event_log import append_correction, append_event, event_scope_ids
from classpoints.rewards.levels import update_student_level
from classpoints.rewards.periods import as_utc
from classpoints.rewards.points_engine import compute_points
from classpoints.rewards.types import Completion, OutboxKind, PointSource, ScopeIds, build_idempotency_key

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """What one unit produced. ``duplicate`` means the award already existed."""

    idempotency_key: str
    amount: int = 0
    duplicate: bool = False
    event_id: int | None = None
    aggregate_keys: list[AggregateKey] = field(default_factory=list)
    level_ups: list[dict] = field(default_factory=list)
    unlocked: list[UnlockRecord] = field(default_factory=list)
    notifications: list[dict] = field(default_factory=list)


async def _apply_award(
    db: AsyncSession,
    event: PointEvent,
    result: PipelineResult,
    activity_type: str | None = None,
    engine: AchievementEngine | None = None,
) -> PipelineResult:
    """Fan out, re-derive levels and evaluate achievements for a written event."""
    result.event_id = event.id
    result.aggregate_keys = await apply_event(db, event)

    scope_ids = event_scope_ids(event)
    for scope in scope_ids.scopes():
        info, old_level = await update_student_level(db, event.student_id, scope)
        if info.level > old_level:
            payload = {
                "student_id": event.student_id,
                "scope_kind": scope.kind.value,
                "scope_id": scope.id,
                "old_level": old_level,
                "new_level": info.level,
            }
            result.level_ups.append(payload)
            outbox.add_record(db, event.student_id, OutboxKind.LEVEL_UP, payload)
            result.notifications.append({"kind": OutboxKind.LEVEL_UP.value, **payload})

    engine = engine or AchievementEngine(db)
    trigger = AchievementTrigger(
        student_id=event.student_id,
        source=PointSource(event.source),
        source_id=event.source_id,
        amount=event.amount,
        activity_type=activity_type,
        scope_ids=scope_ids,
    )
    result.unlocked = await engine.evaluate(event.student_id, trigger)
    for record in result.unlocked:
        payload = record.as_payload()
        outbox.add_record(db, event.student_id, OutboxKind.ACHIEVEMENT_UNLOCKED, payload)
        result.notifications.append({"kind": OutboxKind.ACHIEVEMENT_UNLOCKED.value, **payload})

    award_payload = {
        "student_id": event.student_id,
        "amount": event.amount,
        "source": event.source,
        "source_id": event.source_id,
        "event_id": event.id,
    }
    outbox.add_record(db, event.student_id, OutboxKind.POINTS_AWARDED, award_payload)
    result.notifications.append({"kind": OutboxKind.POINTS_AWARDED.value, **award_payload})

    await db.flush()
    return result


async def process_completion(
    db: AsyncSession,
    completion: Completion,
    engine: AchievementEngine | None = None,
) -> PipelineResult:
    """Run the full pipeline for one completion inside the caller's transaction."""
    result = PipelineResult(idempotency_key=completion.idempotency_key)
    result.amount = compute_points(completion)

    event = await append_event(
        db,
        student_id=completion.student_id,
        amount=result.amount,
        source=completion.source,
        source_id=completion.source_id,
        scope_ids=completion.scope_ids,
        description=f"{completion.activity_type} completed",
        created_at=as_utc(completion.completed_at) if completion.completed_at else None,
    )
    if event is None:
        result.duplicate = True
        return result

    return await _apply_award(db, event, result, completion.activity_type, engine)


async def award_manual_points(
    db: AsyncSession,
    student_id: str,
    amount: int,
    source: PointSource,
    source_id: str,
    scope_ids: ScopeIds,
    description: str | None = None,
    correction: bool = False,
) -> PipelineResult:
    """Award an explicitly signed amount, bypassing the points engine.

    Negative amounts and explicit corrections are written as corrective
    events and are never deduplicated. Other awards share the exactly-once
    guard with completions.
    """
    result = PipelineResult(idempotency_key=build_idempotency_key(student_id, source, source_id), amount=amount)

    if correction or amount < 0:
        event = await append_correction(
            db, student_id, amount, source, source_id, scope_ids, description,
        )
        result.idempotency_key = f"correction:{event.id}"
    else:
        event = await append_event(
            db, student_id, amount, source, source_id, scope_ids, description,
        )
        if event is None:
            result.duplicate = True
            return result

    logger.info("Manual award %+d for %s (%s:%s)", amount, student_id, source.value, source_id)
    return await _apply_award(db, event, result)
