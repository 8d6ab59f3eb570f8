"""Event log: append-only point events with a conditional-insert guard."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.db.models import PointEvent
from classpoints.db.upsert import insert_for
from classpoints.rewards.types import PointSource, ScopeIds, build_idempotency_key

logger = logging.getLogger(__name__)


async def append_event(
    db: AsyncSession,
    student_id: str,
    amount: int,
    source: PointSource,
    source_id: str,
    scope_ids: ScopeIds,
    description: str | None = None,
    created_at: datetime | None = None,
) -> PointEvent | None:
    """Insert a non-corrective event keyed on (student, source, source_id).

    Returns the new event, or None when another run already wrote one. A
    conflict is the exactly-once guard firing, not an error.
    """
    now = created_at or datetime.now(timezone.utc)
    idempotency_key = build_idempotency_key(student_id, source, source_id)

    stmt = insert_for(db, PointEvent).values(
        student_id=student_id,
        amount=amount,
        source=source.value,
        source_id=source_id,
        class_id=scope_ids.class_id,
        subject_id=scope_ids.subject_id,
        course_id=scope_ids.course_id,
        campus_id=scope_ids.campus_id,
        description=description,
        is_correction=False,
        idempotency_key=idempotency_key,
        created_at=now,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["idempotency_key"]).returning(PointEvent.id)

    result = await db.execute(stmt)
    event_id = result.scalar_one_or_none()
    if event_id is None:
        logger.debug("Duplicate award ignored: %s", idempotency_key)
        return None

    return await db.get(PointEvent, event_id)


async def append_correction(
    db: AsyncSession,
    student_id: str,
    amount: int,
    source: PointSource,
    source_id: str,
    scope_ids: ScopeIds,
    description: str | None = None,
    created_at: datetime | None = None,
) -> PointEvent:
    """Insert a corrective event. Corrections are never deduplicated."""
    event = PointEvent(
        student_id=student_id,
        amount=amount,
        source=source.value,
        source_id=source_id,
        class_id=scope_ids.class_id,
        subject_id=scope_ids.subject_id,
        course_id=scope_ids.course_id,
        campus_id=scope_ids.campus_id,
        description=description,
        is_correction=True,
        idempotency_key=None,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(event)
    await db.flush()
    return event


async def find_event(
    db: AsyncSession, student_id: str, source: PointSource | str, source_id: str,
) -> PointEvent | None:
    """Fetch the non-corrective event for an idempotency key, if written."""
    result = await db.execute(
        select(PointEvent).where(
            PointEvent.idempotency_key == build_idempotency_key(student_id, source, source_id)
        )
    )
    return result.scalar_one_or_none()


async def list_events(
    db: AsyncSession,
    student_id: str,
    limit: int = 50,
    offset: int = 0,
) -> list[PointEvent]:
    """Point history for a student, newest first."""
    result = await db.execute(
        select(PointEvent)
        .where(PointEvent.student_id == student_id)
        .order_by(PointEvent.created_at.desc(), PointEvent.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())


def event_scope_ids(event: PointEvent) -> ScopeIds:
    """Denormalized scope ids stored on an event."""
    return ScopeIds(
        class_id=event.class_id,
        subject_id=event.subject_id,
        course_id=event.course_id,
        campus_id=event.campus_id,
    )
