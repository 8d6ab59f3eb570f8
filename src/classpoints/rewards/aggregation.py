"""Aggregation engine: incremental per-scope, per-period point totals.

One event fans out to every (scope, period) it belongs to. Each scope is an
independent row (a campus total is never summed from class rows at read
time). All rows for one event are written by a single
``INSERT ... ON CONFLICT DO UPDATE SET total = total + excluded.total``
so concurrent increments on the same key never lose an update.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.db.models import PointEvent, PointsAggregate
from classpoints.db.upsert import insert_for
from classpoints.exceptions import UnknownScopeError
from classpoints.rewards.event_log import event_scope_ids
from classpoints.rewards.levels import update_student_level
from classpoints.rewards.periods import period_bounds, period_key
from classpoints.rewards.types import PeriodType, Scope, ScopeKind

logger = logging.getLogger(__name__)

_SCOPE_COLUMNS = {
    ScopeKind.CLASS: PointEvent.class_id,
    ScopeKind.SUBJECT: PointEvent.subject_id,
    ScopeKind.COURSE: PointEvent.course_id,
    ScopeKind.CAMPUS: PointEvent.campus_id,
}


@dataclass(frozen=True)
class AggregateKey:
    student_id: str
    scope: Scope
    period_type: PeriodType
    period_key: str

    def as_values(self) -> dict:
        return {
            "student_id": self.student_id,
            "scope_kind": self.scope.kind.value,
            "scope_id": self.scope.id,
            "period_type": self.period_type.value,
            "period_key": self.period_key,
        }


def aggregate_keys_for(event: PointEvent) -> list[AggregateKey]:
    """Every aggregate key an event contributes to: scopes x periods."""
    keys = []
    for scope in event_scope_ids(event).scopes():
        for period_type in PeriodType:
            keys.append(
                AggregateKey(
                    student_id=event.student_id,
                    scope=scope,
                    period_type=period_type,
                    period_key=period_key(period_type, event.created_at),
                )
            )
    return keys


async def apply_event(db: AsyncSession, event: PointEvent) -> list[AggregateKey]:
    """Apply one event's delta to all affected aggregates. Returns the keys touched.

    Runs in the caller's transaction: if the statement fails nothing is
    applied and the caller rolls back the whole unit.
    """
    keys = aggregate_keys_for(event)
    now = datetime.now(timezone.utc)

    stmt = insert_for(db, PointsAggregate).values(
        [{**key.as_values(), "total": event.amount, "updated_at": now} for key in keys]
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["student_id", "scope_kind", "scope_id", "period_type", "period_key"],
        set_={
            "total": PointsAggregate.total + stmt.excluded.total,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    await db.execute(stmt)

    logger.debug("Applied event %s (%+d) to %d aggregates", event.id, event.amount, len(keys))
    return keys


async def get_aggregate_total(db: AsyncSession, key: AggregateKey) -> int:
    """Current total for one aggregate key (0 if the row does not exist)."""
    result = await db.execute(
        select(PointsAggregate.total).where(
            PointsAggregate.student_id == key.student_id,
            PointsAggregate.scope_kind == key.scope.kind.value,
            PointsAggregate.scope_id == key.scope.id,
            PointsAggregate.period_type == key.period_type.value,
            PointsAggregate.period_key == key.period_key,
        )
    )
    return int(result.scalar_one_or_none() or 0)


async def repair_aggregate(db: AsyncSession, key: AggregateKey) -> int:
    """Recompute one aggregate row from the event log and overwrite it.

    Repair-only path for drift (e.g. after a bulk corrective import). The hot
    path never recomputes. Repairing an ALL_TIME row also re-derives the
    student's level in that scope. Returns the recomputed total.
    """
    query = select(func.coalesce(func.sum(PointEvent.amount), 0)).where(
        PointEvent.student_id == key.student_id,
    )
    if key.scope.kind != ScopeKind.GLOBAL:
        column = _SCOPE_COLUMNS.get(key.scope.kind)
        if column is None:
            raise UnknownScopeError(key.scope.kind)
        query = query.where(column == key.scope.id)

    start, end = period_bounds(key.period_type, key.period_key)
    if start is not None and end is not None:
        query = query.where(PointEvent.created_at >= start, PointEvent.created_at < end)

    total = int((await db.execute(query)).scalar_one())
    now = datetime.now(timezone.utc)

    stmt = insert_for(db, PointsAggregate).values(**key.as_values(), total=total, updated_at=now)
    stmt = stmt.on_conflict_do_update(
        index_elements=["student_id", "scope_kind", "scope_id", "period_type", "period_key"],
        set_={"total": stmt.excluded.total, "updated_at": stmt.excluded.updated_at},
    )
    await db.execute(stmt)
    if key.period_type == PeriodType.ALL_TIME:
        await update_student_level(db, key.student_id, key.scope)

    logger.info(
        "Repaired aggregate %s %s %s/%s -> %d",
        key.student_id, key.scope, key.period_type.value, key.period_key, total,
    )
    return total
