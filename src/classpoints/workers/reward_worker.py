"""Reward job worker: polls completions and runs the reward pipeline.

Unit lifecycle (one row in reward_jobs per idempotency key):

    PENDING -> PROCESSING -> DONE
                          -> FAILED (retry after backoff) -> PROCESSING ...
                          -> DEAD   (attempts exhausted, requeue manually)

Operator commands (manual adjustments, achievement resets) are queued as
job rows with a kind and payload and go through the same lifecycle.

The claim commits on its own so the lease is visible to other workers.
The pipeline then runs in a fresh session under a per-unit timeout; the
job's DONE transition commits with the pipeline's writes. On any failure
the unit is rolled back and the failure is recorded in yet another
session, so a half-applied award is never persisted.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from classpoints.config import Settings, get_settings
from classpoints.db.models import ActivityCompletion, PointEvent, RewardJob
from classpoints.db.upsert import insert_for
from classpoints.exceptions import JobNotFoundError, RewardError, UnitTimeoutError
from classpoints.rewards.achievements import AchievementEngine
from classpoints.rewards.commands import apply_command
from classpoints.rewards.outbox import publish_records
from classpoints.rewards.pipeline import PipelineResult, process_completion
from classpoints.rewards.types import Completion, JobKind, JobStatus

logger = logging.getLogger(__name__)

OUTCOME_DONE = "done"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_FAILED = "failed"
OUTCOME_DEAD = "dead"
OUTCOME_SKIPPED = "skipped"


def compute_backoff(attempts: int, base: float, maximum: float) -> float:
    """Seconds to wait before the next attempt: base * 2^(attempts-1), capped."""
    if attempts < 1:
        return 0.0
    return min(base * (2 ** (attempts - 1)), maximum)


def completion_from_row(row: ActivityCompletion) -> Completion:
    """Build the pipeline input from a completion row."""
    return Completion(
        id=row.id,
        student_id=row.student_id,
        source=row.source,
        source_id=row.source_id,
        activity_type=row.activity_type,
        difficulty=row.difficulty,
        score=row.score,
        max_score=row.max_score,
        class_id=row.class_id,
        subject_id=row.subject_id,
        course_id=row.course_id,
        campus_id=row.campus_id,
        completed_at=row.completed_at,
    )


def _completion_key():
    return (
        ActivityCompletion.student_id + ":" + ActivityCompletion.source + ":" + ActivityCompletion.source_id
    )


def _job_claimable(now: datetime):
    """Job rows a worker may (re)claim at ``now``."""
    return or_(
        RewardJob.status == JobStatus.PENDING.value,
        and_(
            RewardJob.status == JobStatus.FAILED.value,
            or_(RewardJob.next_attempt_at.is_(None), RewardJob.next_attempt_at <= now),
        ),
        and_(
            RewardJob.status == JobStatus.PROCESSING.value,
            or_(RewardJob.locked_until.is_(None), RewardJob.locked_until <= now),
        ),
    )


async def discover_pending(db: AsyncSession, limit: int, now: datetime | None = None) -> list[Completion]:
    """Completions with no point event and no job row blocking them."""
    now = now or datetime.now(timezone.utc)
    key = _completion_key()

    awarded = select(PointEvent.id).where(PointEvent.idempotency_key == key).exists()
    blocked = (
        select(RewardJob.id)
        .where(RewardJob.idempotency_key == key, ~_job_claimable(now))
        .exists()
    )

    result = await db.execute(
        select(ActivityCompletion)
        .where(~awarded, ~blocked)
        .order_by(ActivityCompletion.completed_at.asc(), ActivityCompletion.id.asc())
        .limit(limit)
    )
    return [completion_from_row(row) for row in result.scalars().all()]


async def claim_job(
    db: AsyncSession,
    completion: Completion,
    worker_name: str,
    lease_seconds: int,
    now: datetime | None = None,
) -> int | None:
    """Move the unit's job to PROCESSING and bump attempts.

    Returns the attempt number, or None if another worker holds the job or
    it is not yet due. Commits.
    """
    now = now or datetime.now(timezone.utc)
    locked_until = now + timedelta(seconds=lease_seconds)

    stmt = insert_for(db, RewardJob).values(
        idempotency_key=completion.idempotency_key,
        kind=JobKind.COMPLETION.value,
        completion_id=completion.id,
        status=JobStatus.PROCESSING.value,
        attempts=1,
        locked_until=locked_until,
        locked_by=worker_name,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["idempotency_key"],
        set_={
            "status": JobStatus.PROCESSING.value,
            "attempts": RewardJob.attempts + 1,
            "locked_until": locked_until,
            "locked_by": worker_name,
            "updated_at": now,
        },
        where=_job_claimable(now),
    ).returning(RewardJob.attempts)

    result = await db.execute(stmt)
    attempts = result.scalar_one_or_none()
    await db.commit()
    return attempts


async def discover_commands(db: AsyncSession, limit: int, now: datetime | None = None) -> list[RewardJob]:
    """Queued operator commands that are due, oldest first."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(RewardJob)
        .where(RewardJob.kind != JobKind.COMPLETION.value, _job_claimable(now))
        .order_by(RewardJob.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def claim_command(
    db: AsyncSession,
    job_id: int,
    worker_name: str,
    lease_seconds: int,
    now: datetime | None = None,
) -> int | None:
    """Lease a queued command. Same contract as ``claim_job``. Commits."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        update(RewardJob)
        .where(RewardJob.id == job_id, _job_claimable(now))
        .values(
            status=JobStatus.PROCESSING.value,
            attempts=RewardJob.attempts + 1,
            locked_until=now + timedelta(seconds=lease_seconds),
            locked_by=worker_name,
            updated_at=now,
        )
        .returning(RewardJob.attempts)
        .execution_options(synchronize_session=False)
    )
    attempts = result.scalar_one_or_none()
    await db.commit()
    return attempts


async def get_job(db: AsyncSession, job_id: int) -> RewardJob:
    job = await db.get(RewardJob, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


async def requeue_dead_job(db: AsyncSession, job_id: int) -> RewardJob:
    """Reset a DEAD (or FAILED) job to PENDING with a fresh attempt budget."""
    job = await get_job(db, job_id)
    if job.status not in (JobStatus.DEAD.value, JobStatus.FAILED.value):
        raise RewardError(f"Reward job {job_id} is {job.status}, only DEAD or FAILED jobs can be requeued")

    job.status = JobStatus.PENDING.value
    job.attempts = 0
    job.next_attempt_at = None
    job.locked_until = None
    job.locked_by = None
    job.last_error = None
    job.updated_at = datetime.now(timezone.utc)
    await db.commit()

    logger.info("Requeued reward job %d (%s)", job_id, job.idempotency_key)
    return job




class RewardJobWorker:
    """Polling loop feeding a bounded pool of unit processors."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis: object | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.redis = redis
        self.settings = settings or get_settings()
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrency)
        self._running = False

    async def poll_once(self) -> dict[str, int]:
        """Discover one batch of completions and commands and process it. Returns outcome counts."""
        async with self.session_factory() as db:
            completions = await discover_pending(db, self.settings.poll_batch_size)
            commands = await discover_commands(db, self.settings.poll_batch_size)

        stats = {
            OUTCOME_DONE: 0,
            OUTCOME_DUPLICATE: 0,
            OUTCOME_FAILED: 0,
            OUTCOME_DEAD: 0,
            OUTCOME_SKIPPED: 0,
        }
        if not completions and not commands:
            return stats

        units = [self.process_unit(c) for c in completions] + [self.process_command(j) for j in commands]
        outcomes = await asyncio.gather(*(self._bounded(unit) for unit in units))
        for outcome in outcomes:
            stats[outcome] += 1

        logger.info(
            "Reward poll: %d done, %d duplicate, %d failed, %d dead, %d skipped",
            stats[OUTCOME_DONE], stats[OUTCOME_DUPLICATE], stats[OUTCOME_FAILED],
            stats[OUTCOME_DEAD], stats[OUTCOME_SKIPPED],
        )
        return stats

    async def _bounded(self, unit: Awaitable[str]) -> str:
        async with self._semaphore:
            return await unit

    async def process_unit(self, completion: Completion) -> str:
        """Claim, run and settle one completion. Never raises."""
        key = completion.idempotency_key
        try:
            async with self.session_factory() as db:
                attempts = await claim_job(
                    db, completion, self.settings.worker_name, self.settings.lease_seconds,
                )
        except Exception:
            logger.exception("Failed to claim reward job %s", key)
            return OUTCOME_SKIPPED

        if attempts is None:
            return OUTCOME_SKIPPED

        return await self._execute(
            key,
            attempts,
            lambda db: process_completion(db, completion, AchievementEngine(db)),
            f"completion={completion.id} student={completion.student_id}",
        )

    async def process_command(self, job: RewardJob) -> str:
        """Claim, apply and settle one queued operator command. Never raises."""
        try:
            async with self.session_factory() as db:
                attempts = await claim_command(
                    db, job.id, self.settings.worker_name, self.settings.lease_seconds,
                )
        except Exception:
            logger.exception("Failed to claim reward job %s", job.idempotency_key)
            return OUTCOME_SKIPPED

        if attempts is None:
            return OUTCOME_SKIPPED

        payload = job.payload or {}
        return await self._execute(
            job.idempotency_key,
            attempts,
            lambda db: apply_command(db, job.idempotency_key, JobKind(job.kind), payload),
            f"command={job.kind} job={job.id} student={payload.get('student_id')}",
        )

    async def _execute(
        self,
        key: str,
        attempts: int,
        run: Callable[[AsyncSession], Awaitable[PipelineResult]],
        context: str,
    ) -> str:
        async with self.session_factory() as db:
            try:
                result = await asyncio.wait_for(
                    self._run_and_settle(db, key, run),
                    timeout=self.settings.unit_timeout_seconds,
                )
            except Exception as exc:
                await db.rollback()
                if isinstance(exc, asyncio.TimeoutError):
                    exc = UnitTimeoutError(
                        f"unit exceeded {self.settings.unit_timeout_seconds}s"
                    )
                return await self._record_failure(key, attempts, exc, context)

        await publish_records(self.redis, result.notifications)
        return OUTCOME_DUPLICATE if result.duplicate else OUTCOME_DONE

    async def _run_and_settle(
        self,
        db: AsyncSession,
        key: str,
        run: Callable[[AsyncSession], Awaitable[PipelineResult]],
    ) -> PipelineResult:
        result = await run(db)
        await db.execute(
            update(RewardJob)
            .where(RewardJob.idempotency_key == key)
            .values(
                status=JobStatus.DONE.value,
                locked_until=None,
                last_error=None,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result

    async def _record_failure(self, key: str, attempts: int, exc: BaseException, context: str) -> str:
        now = datetime.now(timezone.utc)
        error = f"{type(exc).__name__}: {exc}"[:2000]

        if attempts >= self.settings.max_attempts:
            status = JobStatus.DEAD
            next_attempt_at = None
            logger.error(
                "Reward job DEAD: key=%s %s attempts=%d error=%s",
                key, context, attempts, error,
                exc_info=exc,
            )
        else:
            status = JobStatus.FAILED
            delay = compute_backoff(
                attempts, self.settings.backoff_base_seconds, self.settings.backoff_max_seconds,
            )
            next_attempt_at = now + timedelta(seconds=delay)
            logger.warning(
                "Reward job failed: key=%s %s attempts=%d retry_in=%.1fs error=%s",
                key, context, attempts, delay, error,
            )

        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(RewardJob)
                    .where(RewardJob.idempotency_key == key)
                    .values(
                        status=status.value,
                        next_attempt_at=next_attempt_at,
                        locked_until=None,
                        last_error=error,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except Exception:
            # The lease expires on its own and the unit is retried from PROCESSING
            logger.exception("Failed to record failure for reward job %s", key)

        return OUTCOME_DEAD if status is JobStatus.DEAD else OUTCOME_FAILED

    async def run(self) -> None:
        """Poll until ``stop()`` is called."""
        self._running = True
        logger.info(
            "Reward worker %s started (interval=%ds, concurrency=%d)",
            self.settings.worker_name, self.settings.poll_interval_seconds, self.settings.max_concurrency,
        )
        while self._running:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Reward poll failed")
            if self._running:
                await asyncio.sleep(self.settings.poll_interval_seconds)
        logger.info("Reward worker %s stopped", self.settings.worker_name)

    def stop(self) -> None:
        self._running = False
