"""Reward outbox: typed award/unlock/level-up records.

Records are written in the same transaction as the award that caused them,
so a rolled-back unit never leaves a notification behind. The notification
subsystem polls ``fetch_undelivered`` / ``mark_delivered``; after commit the
worker also broadcasts each record on Redis pub/sub as a best-effort hint.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from classpoints.db.models import RewardOutbox
from classpoints.rewards.types import OutboxKind

logger = logging.getLogger(__name__)

PUBSUB_CHANNEL = "pubsub:reward_events"


def add_record(db: AsyncSession, student_id: str, kind: OutboxKind, payload: dict) -> RewardOutbox:
    """Stage an outbox record in the current transaction."""
    record = RewardOutbox(
        student_id=student_id,
        kind=kind.value,
        payload=payload,
        created_at=datetime.now(timezone.utc),
    )
    db.add(record)
    return record


async def fetch_undelivered(db: AsyncSession, limit: int = 100) -> list[RewardOutbox]:
    """Oldest undelivered records first."""
    result = await db.execute(
        select(RewardOutbox)
        .where(RewardOutbox.delivered_at.is_(None))
        .order_by(RewardOutbox.id.asc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def mark_delivered(db: AsyncSession, ids: list[int]) -> int:
    """Mark records delivered. Returns rows updated."""
    if not ids:
        return 0
    result = await db.execute(
        update(RewardOutbox)
        .where(RewardOutbox.id.in_(ids), RewardOutbox.delivered_at.is_(None))
        .values(delivered_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0


async def publish_records(redis: object, records: list[dict]) -> None:
    """Broadcast committed records on Redis pub/sub. Failures are logged only."""
    if redis is None or not records:
        return
    for record in records:
        try:
            await redis.publish(PUBSUB_CHANNEL, json.dumps(record, default=str))  # type: ignore[union-attr]
        except Exception:
            logger.warning("Failed to publish reward event", exc_info=True)
