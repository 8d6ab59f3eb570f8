"""Operational endpoints: aggregate repair, reward jobs, queued operator
commands and the notification outbox.

Manual adjustments and achievement resets are only enqueued here; the
reward worker applies them. Aggregate repair is the one direct write.
Authentication is enforced by the host portal in front of this service.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.dashboard.router import parse_scope
from classpoints.database import get_session
from classpoints.db.models import RewardJob
from classpoints.ops.schemas import (
    AckRequest,
    AdjustPointsRequest,
    CommandResponse,
    JobResponse,
    OutboxRecordResponse,
    RepairRequest,
    RepairResponse,
    ResetProgressRequest,
)
from classpoints.rewards import outbox
from classpoints.rewards.aggregation import AggregateKey, get_aggregate_total, repair_aggregate
from classpoints.rewards.commands import EnqueuedCommand, enqueue_adjustment, enqueue_reset
from classpoints.rewards.types import GLOBAL_SCOPE_ID, Scope, ScopeIds, ScopeKind
from classpoints.workers.reward_worker import get_job, requeue_dead_job

router = APIRouter(prefix="/api/v1/ops", tags=["Operations"])


def _job_response(job: RewardJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        idempotency_key=job.idempotency_key,
        kind=job.kind,
        status=job.status,
        attempts=job.attempts,
        last_error=job.last_error,
    )


def _command_response(enqueued: EnqueuedCommand) -> CommandResponse:
    return CommandResponse(
        **_job_response(enqueued.job).model_dump(),
        duplicate=enqueued.duplicate,
    )


@router.post("/aggregates/repair", response_model=RepairResponse)
async def repair(
    body: RepairRequest,
    db: AsyncSession = Depends(get_session),
) -> RepairResponse:
    """Recompute one aggregate row from the event log (and the level, for ALL_TIME)."""
    scope_id = GLOBAL_SCOPE_ID if body.scope_kind == ScopeKind.GLOBAL else body.scope_id
    key = AggregateKey(
        student_id=body.student_id,
        scope=Scope(body.scope_kind, scope_id),
        period_type=body.period_type,
        period_key=body.period_key,
    )
    previous = await get_aggregate_total(db, key)
    total = await repair_aggregate(db, key)
    await db.commit()
    return RepairResponse(
        student_id=body.student_id,
        scope_kind=body.scope_kind.value,
        scope_id=scope_id,
        period_type=body.period_type.value,
        period_key=body.period_key,
        previous_total=previous,
        total=total,
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def job_status(
    job_id: int,
    db: AsyncSession = Depends(get_session),
) -> JobResponse:
    """State of one reward job or queued command."""
    return _job_response(await get_job(db, job_id))


@router.post("/jobs/{job_id}/requeue", response_model=JobResponse)
async def requeue(
    job_id: int,
    db: AsyncSession = Depends(get_session),
) -> JobResponse:
    """Reset a DEAD or FAILED reward job to PENDING."""
    return _job_response(await requeue_dead_job(db, job_id))


@router.post("/points/adjust", response_model=CommandResponse, status_code=202)
async def adjust_points(
    body: AdjustPointsRequest,
    db: AsyncSession = Depends(get_session),
) -> CommandResponse:
    """Queue an award or deduction outside the completion feed."""
    enqueued = await enqueue_adjustment(
        db,
        student_id=body.student_id,
        amount=body.amount,
        source=body.source,
        source_id=body.source_id,
        scope_ids=ScopeIds(
            class_id=body.class_id,
            subject_id=body.subject_id,
            course_id=body.course_id,
            campus_id=body.campus_id,
        ),
        description=body.description,
        correction=body.correction,
    )
    await db.commit()
    return _command_response(enqueued)


@router.post("/achievements/reset", response_model=CommandResponse, status_code=202)
async def reset_achievement(
    body: ResetProgressRequest,
    db: AsyncSession = Depends(get_session),
) -> CommandResponse:
    """Queue a progress reset. Unlocked achievements stay unlocked."""
    scope = parse_scope(body.scope_kind, body.scope_id)
    enqueued = await enqueue_reset(db, body.student_id, body.slug, scope)
    await db.commit()
    return _command_response(enqueued)


@router.get("/outbox", response_model=list[OutboxRecordResponse])
async def pending_outbox(
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_session),
) -> list[OutboxRecordResponse]:
    """Undelivered reward notifications, oldest first."""
    records = await outbox.fetch_undelivered(db, limit)
    return [
        OutboxRecordResponse(id=r.id, student_id=r.student_id, kind=r.kind, payload=r.payload)
        for r in records
    ]


@router.post("/outbox/ack")
async def ack_outbox(
    body: AckRequest,
    db: AsyncSession = Depends(get_session),
) -> dict[str, int]:
    """Mark notifications delivered."""
    return {"delivered": await outbox.mark_delivered(db, body.ids)}
