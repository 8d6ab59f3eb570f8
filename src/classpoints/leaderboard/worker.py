"""Leaderboard snapshot arq worker: one cron job per period granularity.

Schedule (UTC):
- DAY: daily at 00:01, final standings of the day just ended
- WEEK: Mondays at 00:05, final standings of the week just ended
- MONTH: the 1st at 00:10, final standings of the month just ended
- TERM: daily at 00:15, running standings of the current term
- ALL_TIME: hourly

Closed periods are selected with a ``period_at`` one day back; snapshots
are stamped with the real generation time. Each cycle has its own
timeout; a cycle that runs out is skipped and leaves the previous
snapshot in place.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from arq import cron
from arq.connections import RedisSettings

from classpoints.config import get_settings
from classpoints.database import close_db, get_session_factory, init_db
from classpoints.leaderboard.snapshot_service import generate_for_period
from classpoints.rewards.types import PeriodType

logger = logging.getLogger(__name__)


def _yesterday() -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=1)


async def _run_cycle(period_type: PeriodType, period_at: datetime | None = None) -> int | None:
    settings = get_settings()
    return await generate_for_period(
        get_session_factory(),
        period_type,
        timeout=settings.leaderboard_timeout_seconds,
        period_at=period_at,
    )


async def snapshot_daily(ctx: dict) -> int | None:
    """Snapshot yesterday's boards. Runs just after midnight."""
    return await _run_cycle(PeriodType.DAY, _yesterday())


async def snapshot_weekly(ctx: dict) -> int | None:
    """Snapshot last week's boards. Runs Mondays just after midnight."""
    return await _run_cycle(PeriodType.WEEK, _yesterday())


async def snapshot_monthly(ctx: dict) -> int | None:
    """Snapshot last month's boards. Runs on the 1st just after midnight."""
    return await _run_cycle(PeriodType.MONTH, _yesterday())


async def snapshot_term(ctx: dict) -> int | None:
    """Snapshot the current term's boards. Runs daily."""
    return await _run_cycle(PeriodType.TERM)


async def snapshot_alltime(ctx: dict) -> int | None:
    """Snapshot the all-time boards. Runs hourly."""
    return await _run_cycle(PeriodType.ALL_TIME)


async def leaderboard_startup(ctx: dict) -> None:
    """Initialize DB connections on worker startup."""
    settings = get_settings()
    await init_db(settings.database_url)
    logger.info("Leaderboard worker started")


async def leaderboard_shutdown(ctx: dict) -> None:
    """Clean up on worker shutdown."""
    await close_db()
    logger.info("Leaderboard worker shut down")


_settings = get_settings()
_cycle_timeout = int(_settings.leaderboard_timeout_seconds) + 30


class LeaderboardWorkerSettings:
    """arq worker settings for leaderboard snapshots."""

    functions = [
        snapshot_daily,
        snapshot_weekly,
        snapshot_monthly,
        snapshot_term,
        snapshot_alltime,
    ]
    cron_jobs = [
        cron(snapshot_daily, hour=0, minute=1, timeout=_cycle_timeout, unique=True),
        cron(snapshot_weekly, weekday=0, hour=0, minute=5, timeout=_cycle_timeout, unique=True),
        cron(snapshot_monthly, day=1, hour=0, minute=10, timeout=_cycle_timeout, unique=True),
        cron(snapshot_term, hour=0, minute=15, timeout=_cycle_timeout, unique=True),
        cron(snapshot_alltime, minute=0, timeout=_cycle_timeout, unique=True),
    ]
    redis_settings = RedisSettings.from_dsn(_settings.redis_url)
    on_startup = leaderboard_startup
    on_shutdown = leaderboard_shutdown
    max_jobs = 2
    job_timeout = 300  # 5 minutes max per job
