"""Standalone runner for the reward job worker.

Polls activity completions and runs the reward pipeline until SIGINT or
SIGTERM. Equivalent to the arq cron job in ``classpoints.workers.settings``
for deployments without an arq process.

Usage: python -m classpoints.workers.reward_runner
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal

import redis.asyncio as aioredis

from classpoints.config import get_settings
from classpoints.database import close_db, get_session_factory, init_db
from classpoints.workers.reward_worker import RewardJobWorker

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def main() -> None:
    """Run the reward worker loop."""
    settings = get_settings()
    await init_db(settings.database_url)

    redis_url = os.environ.get("CP_REDIS_URL", settings.redis_url)
    redis_client = aioredis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )

    worker = RewardJobWorker(get_session_factory(), redis_client, settings)

    # Handle graceful shutdown
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    logger.info("Starting reward worker (worker=%s)", settings.worker_name)

    try:
        await worker.run()
    finally:
        await redis_client.aclose()
        await close_db()
        logger.info("Reward worker stopped")


if __name__ == "__main__":
    asyncio.run(main())
