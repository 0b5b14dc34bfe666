"""Leaderboard service — pre-ranked rows per window, rebuilt by a refresh job.

Reads are plain selects on the ``leaderboard`` table ordered by rank. The
refresh job sums ledger XP inside the current window, ranks users and
replaces the window's rows in one transaction.

Ties on window XP go to the older account, then to the lower user id.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import NamedTuple

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ascend import events
from ascend.db.models import LeaderboardEntry, User, UserProgress, XPTransaction
from ascend.exceptions import PersistenceFailed, ReadFailed
from ascend.gamification.windows import (
    as_utc,
    get_month_boundaries,
    get_week_boundaries,
    validate_window,
    window_label,
)

logger = logging.getLogger(__name__)


class Standing(NamedTuple):
    """One user's aggregate for a window, before ranking."""

    user_id: int
    window_xp: int
    created_at: datetime


def _tie_break_key(row: Standing) -> tuple[int, datetime, int]:
    return (-row.window_xp, as_utc(row.created_at), row.user_id)


def rank_entries(rows: Iterable[Standing]) -> list[tuple[int, Standing]]:
    """Assign ranks 1..n: window XP desc, then earlier account, then lower id."""
    return [(rank, row) for rank, row in enumerate(sorted(rows, key=_tie_break_key), start=1)]


async def get_leaderboard(db: AsyncSession, window: str, limit: int = 100) -> list[LeaderboardEntry]:
    """Up to ``limit`` entries for the window, rank 1 first."""
    window = validate_window(window)
    if limit <= 0:
        return []
    try:
        result = await db.execute(
            select(LeaderboardEntry)
            .where(LeaderboardEntry.date_range == window)
            .order_by(LeaderboardEntry.rank.asc())
            .limit(limit)
        )
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load {window} leaderboard: {exc}") from exc
    return list(result.scalars().all())


async def get_user_rank(db: AsyncSession, window: str, user_id: int) -> LeaderboardEntry | None:
    """The user's row in the window, or None when unranked."""
    window = validate_window(window)
    try:
        result = await db.execute(
            select(LeaderboardEntry).where(
                LeaderboardEntry.date_range == window,
                LeaderboardEntry.user_id == user_id,
            )
        )
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load leaderboard rank: {exc}") from exc
    return result.scalar_one_or_none()


async def count_ranked(db: AsyncSession, window: str) -> int:
    window = validate_window(window)
    try:
        result = await db.execute(
            select(func.count()).select_from(LeaderboardEntry).where(LeaderboardEntry.date_range == window)
        )
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not count leaderboard rows: {exc}") from exc
    return result.scalar_one()


async def _sum_xp_between(db: AsyncSession, start: datetime, end: datetime) -> dict[int, int]:
    result = await db.execute(
        select(XPTransaction.user_id, func.sum(XPTransaction.amount).label("total"))
        .where(XPTransaction.created_at >= start, XPTransaction.created_at < end)
        .group_by(XPTransaction.user_id)
    )
    return {row.user_id: int(row.total or 0) for row in result}


async def refresh_leaderboard(
    db: AsyncSession,
    redis: object,
    window: str,
    now: datetime | None = None,
) -> int:
    """Rebuild the window's rows from the ledger. Returns the number of ranked users.

    Only users with XP inside the window are ranked.
    """
    window = validate_window(window)
    now = now or datetime.now(timezone.utc)

    try:
        weekly = await _sum_xp_between(db, *get_week_boundaries(now))
        monthly = await _sum_xp_between(db, *get_month_boundaries(now))
        totals = weekly if window == "weekly" else monthly

        user_ids = [uid for uid, xp in totals.items() if xp > 0]
        users: dict[int, User] = {}
        progress: dict[int, UserProgress] = {}
        if user_ids:
            user_result = await db.execute(select(User).where(User.id.in_(user_ids)))
            users = {u.id: u for u in user_result.scalars()}
            progress_result = await db.execute(select(UserProgress).where(UserProgress.user_id.in_(user_ids)))
            progress = {p.user_id: p for p in progress_result.scalars()}
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not aggregate {window} XP: {exc}") from exc

    standings = [
        Standing(user_id=uid, window_xp=totals[uid], created_at=users[uid].created_at)
        for uid in user_ids
        if uid in users
    ]
    ranked = rank_entries(standings)

    try:
        await db.execute(delete(LeaderboardEntry).where(LeaderboardEntry.date_range == window))
        for rank, standing in ranked:
            user = users[standing.user_id]
            summary = progress.get(standing.user_id)
            db.add(LeaderboardEntry(
                user_id=standing.user_id,
                date_range=window,
                xp=summary.xp if summary else 0,
                weekly_xp=weekly.get(standing.user_id, 0),
                monthly_xp=monthly.get(standing.user_id, 0),
                rank=rank,
                level=summary.level if summary else 1,
                username=user.username,
                full_name=user.full_name,
                avatar_url=user.avatar_url,
                updated_at=now,
            ))
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceFailed(f"Could not write {window} leaderboard: {exc}") from exc

    logger.info("Refreshed %s leaderboard %s: %d entries", window, window_label(window, now), len(ranked))
    await events.publish_event(redis, events.LEADERBOARD_REFRESHED, {
        "window": window,
        "period": window_label(window, now),
        "entries": len(ranked),
    })
    return len(ranked)
