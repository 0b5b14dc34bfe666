"""Standalone runner for the leaderboard refresh and award reconciliation jobs.

Every ``leaderboard_refresh_interval_seconds`` it rebuilds the weekly and
monthly leaderboards from the XP ledger and replays any challenge awards
that were lost to a partial failure.

Usage: python -m ascend.workers.leaderboard_runner [--once]
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from ascend.config import get_settings
from ascend.database import close_db, get_session_factory, init_db
from ascend.exceptions import AscendError
from ascend.gamification.challenge_service import reconcile_challenge_awards
from ascend.gamification.constants import LeaderboardWindow
from ascend.gamification.leaderboard_service import refresh_leaderboard
from ascend.redis_client import close_redis, get_redis_or_none, init_redis

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

_stop = asyncio.Event()


async def run_once(redis: object) -> dict[str, int]:
    """One pass: reconcile missing awards first so they count towards the rankings."""
    factory = get_session_factory()
    summary: dict[str, int] = {}

    async with factory() as db:
        try:
            summary["reconciled"] = await reconcile_challenge_awards(db, redis)
        except AscendError as exc:
            logger.error("Award reconciliation failed: %s", exc.to_dict())

    for window in LeaderboardWindow:
        async with factory() as db:
            try:
                summary[window.value] = await refresh_leaderboard(db, redis, window.value)
            except AscendError as exc:
                logger.error("Refreshing %s leaderboard failed: %s", window.value, exc.to_dict())
    return summary


async def main(once: bool = False) -> None:
    settings = get_settings()
    await init_db(settings.database_url)
    await init_redis(settings.redis_url)
    redis = get_redis_or_none()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _stop.set)

    logger.info("Starting leaderboard runner (interval=%ss)", settings.leaderboard_refresh_interval_seconds)
    try:
        while not _stop.is_set():
            summary = await run_once(redis)
            logger.info("Leaderboard pass complete: %s", summary)
            if once:
                break
            try:
                await asyncio.wait_for(_stop.wait(), timeout=settings.leaderboard_refresh_interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        await close_redis()
        await close_db()
        logger.info("Leaderboard runner stopped")


if __name__ == "__main__":
    asyncio.run(main(once="--once" in sys.argv[1:]))
