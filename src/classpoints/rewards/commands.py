"""Operator commands: manual point adjustments and achievement resets.

The ops API never writes reward state itself. It enqueues a command as a
``reward_jobs`` row (kind + JSON payload) and the reward worker applies it
with the same claim, timeout, retry and DEAD handling as a completion.

Non-corrective adjustments are keyed like the award they produce, so the
same adjustment enqueued twice is one job. Corrections and resets always
get a fresh key.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.db.models import RewardJob
from classpoints.db.upsert import insert_for
from classpoints.exceptions import RewardError
from classpoints.rewards.achievements import reset_progress
from classpoints.rewards.pipeline import PipelineResult, award_manual_points
from classpoints.rewards.types import (
    JobKind,
    JobStatus,
    PointSource,
    Scope,
    ScopeIds,
    ScopeKind,
    build_idempotency_key,
)

logger = logging.getLogger(__name__)


@dataclass
class EnqueuedCommand:
    job: RewardJob
    duplicate: bool = False


async def _enqueue(db: AsyncSession, key: str, kind: JobKind, payload: dict[str, Any]) -> EnqueuedCommand:
    now = datetime.now(timezone.utc)
    stmt = insert_for(db, RewardJob).values(
        idempotency_key=key,
        kind=kind.value,
        payload=payload,
        status=JobStatus.PENDING.value,
        attempts=0,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_nothing(index_elements=["idempotency_key"]).returning(RewardJob.id)
    inserted = (await db.execute(stmt)).scalar_one_or_none()

    job = (await db.execute(select(RewardJob).where(RewardJob.idempotency_key == key))).scalar_one()
    return EnqueuedCommand(job=job, duplicate=inserted is None)


async def enqueue_adjustment(
    db: AsyncSession,
    student_id: str,
    amount: int,
    source: PointSource,
    source_id: str,
    scope_ids: ScopeIds,
    description: str | None = None,
    correction: bool = False,
) -> EnqueuedCommand:
    """Queue a signed manual award for the reward worker. Does not commit."""
    corrective = correction or amount < 0
    if corrective:
        key = f"adjust:correction:{uuid.uuid4().hex}"
    else:
        key = "adjust:" + build_idempotency_key(student_id, source, source_id)

    payload = {
        "student_id": student_id,
        "amount": amount,
        "source": source.value,
        "source_id": source_id,
        "class_id": scope_ids.class_id,
        "subject_id": scope_ids.subject_id,
        "course_id": scope_ids.course_id,
        "campus_id": scope_ids.campus_id,
        "description": description,
        "correction": corrective,
    }
    enqueued = await _enqueue(db, key, JobKind.POINTS_ADJUSTMENT, payload)
    if enqueued.duplicate:
        logger.info("Adjustment %s already queued as job %d", key, enqueued.job.id)
    else:
        logger.info("Queued adjustment %+d for %s (%s:%s)", amount, student_id, source.value, source_id)
    return enqueued


async def enqueue_reset(
    db: AsyncSession,
    student_id: str,
    slug: str,
    scope: Scope | None = None,
) -> EnqueuedCommand:
    """Queue an achievement progress reset for the reward worker. Does not commit."""
    payload = {
        "student_id": student_id,
        "slug": slug,
        "scope_kind": scope.kind.value if scope else None,
        "scope_id": scope.id if scope else None,
    }
    key = f"reset:{student_id}:{slug}:{uuid.uuid4().hex}"
    logger.info("Queued achievement reset %s for %s", slug, student_id)
    return await _enqueue(db, key, JobKind.ACHIEVEMENT_RESET, payload)


async def apply_command(db: AsyncSession, key: str, kind: JobKind, payload: dict[str, Any]) -> PipelineResult:
    """Apply one queued command inside the caller's transaction."""
    if kind == JobKind.POINTS_ADJUSTMENT:
        return await award_manual_points(
            db,
            student_id=payload["student_id"],
            amount=int(payload["amount"]),
            source=PointSource(payload["source"]),
            source_id=payload["source_id"],
            scope_ids=ScopeIds(
                class_id=payload.get("class_id"),
                subject_id=payload.get("subject_id"),
                course_id=payload.get("course_id"),
                campus_id=payload.get("campus_id"),
            ),
            description=payload.get("description"),
            correction=bool(payload.get("correction")),
        )

    if kind == JobKind.ACHIEVEMENT_RESET:
        scope = None
        if payload.get("scope_kind"):
            scope = Scope(ScopeKind(payload["scope_kind"]), payload["scope_id"])
        reset = await reset_progress(db, payload["student_id"], payload["slug"], scope)
        logger.info("Reset %d progress rows of %s for %s", reset, payload["slug"], payload["student_id"])
        return PipelineResult(idempotency_key=key)

    raise RewardError(f"Reward job {key} has no command to apply (kind {kind.value})")
