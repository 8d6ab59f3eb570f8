"""arq worker settings for the reward pipeline.

Import path for arq CLI: arq classpoints.workers.settings.RewardWorkerSettings
Leaderboard snapshots run in their own process:
arq classpoints.leaderboard.worker.LeaderboardWorkerSettings
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from arq import cron
from arq.connections import RedisSettings

from classpoints.config import get_settings
from classpoints.database import close_db, get_session_factory, init_db
from classpoints.rewards.outbox import fetch_undelivered
from classpoints.workers.reward_worker import RewardJobWorker

logger = logging.getLogger(__name__)


def poll_seconds(interval: int) -> set[int]:
    """Second-of-minute marks for a poll interval (arq cron resolution).

    Only divisors of 60 give evenly spaced polls, so anything else is rejected.
    """
    if interval < 1 or interval > 60 or 60 % interval:
        msg = f"Poll interval must be a divisor of 60, got {interval}"
        raise ValueError(msg)
    return set(range(0, 60, interval))


async def reward_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Initialize DB, the pub/sub Redis client and the job worker."""
    settings = get_settings()
    await init_db(settings.database_url)

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    ctx["pubsub_redis"] = redis_client
    ctx["reward_worker"] = RewardJobWorker(get_session_factory(), redis_client, settings)
    logger.info("Reward worker started")


async def reward_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    redis_client = ctx.get("pubsub_redis")
    if redis_client:
        await redis_client.aclose()
    await close_db()
    logger.info("Reward worker shut down")


async def poll_rewards(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """One discovery + processing cycle."""
    worker: RewardJobWorker = ctx["reward_worker"]
    return await worker.poll_once()


async def report_outbox_backlog(ctx: dict) -> int:  # type: ignore[type-arg]
    """Log the undelivered outbox backlog so a stalled consumer is visible."""
    factory = get_session_factory()
    async with factory() as db:
        pending = await fetch_undelivered(db, limit=1000)
    if len(pending) >= 1000:
        logger.warning("Reward outbox backlog: 1000+ undelivered records")
    elif pending:
        logger.info("Reward outbox backlog: %d undelivered records", len(pending))
    return len(pending)


_settings = get_settings()


class RewardWorkerSettings:
    """arq worker settings for the reward job worker."""

    functions = [poll_rewards, report_outbox_backlog]
    cron_jobs = [
        cron(
            poll_rewards,
            second=poll_seconds(_settings.poll_interval_seconds),
            unique=True,
            timeout=max(_settings.poll_interval_seconds * 20, 300),
        ),
        cron(report_outbox_backlog, minute={0, 15, 30, 45}, unique=True),
    ]
    redis_settings = RedisSettings.from_dsn(_settings.redis_url)
    on_startup = reward_startup
    on_shutdown = reward_shutdown
    max_jobs = 2
    job_timeout = 600


__all__ = ["RewardWorkerSettings"]
