"""Badge award service with duplicate prevention and XP grant."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ascend import events
from ascend.db.models import Badge, UserBadge
from ascend.exceptions import PersistenceFailed, ReadFailed
from ascend.gamification.constants import TransactionType
from ascend.gamification.xp_service import get_or_create_progress, record_transaction

logger = logging.getLogger(__name__)


async def get_badge_by_slug(db: AsyncSession, slug: str) -> Badge | None:
    """Fetch a badge definition by slug."""
    try:
        result = await db.execute(select(Badge).where(Badge.slug == slug))
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load badge {slug!r}: {exc}") from exc
    return result.scalar_one_or_none()


async def has_badge(db: AsyncSession, user_id: int, badge_id: int) -> bool:
    """Check if user already has a specific badge."""
    result = await db.execute(
        select(UserBadge.id).where(
            UserBadge.user_id == user_id,
            UserBadge.badge_id == badge_id,
        )
    )
    return result.scalar_one_or_none() is not None


async def award_badge(
    db: AsyncSession,
    redis: object,
    user_id: int,
    badge_id: int,
    metadata: dict | None = None,
) -> bool:
    """Award a badge to a user. Does not commit.

    Returns True if awarded, False if already earned or badge not found.
    Handles:
    1. Insert into user_badges (UNIQUE constraint, inside a savepoint)
    2. Grant the badge's XP as a badge_earned transaction (idempotent)
    3. Update user_progress.badges_earned
    4. Queue badge_earned for publishing after the caller commits
    """
    badge = await db.get(Badge, badge_id)
    if badge is None:
        logger.warning("Badge not found: %s", badge_id)
        return False

    if await has_badge(db, user_id, badge.id):
        return False

    now = datetime.now(timezone.utc)
    try:
        async with db.begin_nested():
            db.add(UserBadge(
                user_id=user_id,
                badge_id=badge.id,
                earned_at=now,
                badge_metadata=metadata or {},
            ))
    except IntegrityError:
        return False  # Race condition: badge already awarded
    except SQLAlchemyError as exc:
        raise PersistenceFailed(f"Could not award badge: {exc}") from exc

    if badge.xp_reward > 0:
        await record_transaction(
            db,
            redis,
            user_id,
            badge.xp_reward,
            TransactionType.BADGE_EARNED.value,
            reference_id=str(badge.id),
            reference_type="badge",
            metadata={"badge": badge.slug},
            idempotency_key=f"badge:{badge.id}:{user_id}",
        )

    progress = await get_or_create_progress(db, user_id)
    progress.badges_earned += 1
    progress.updated_at = now
    await db.flush()

    events.defer_event(db, redis, events.BADGE_EARNED, {
        "user_id": user_id,
        "badge_id": badge.id,
        "badge_slug": badge.slug,
        "badge_name": badge.name,
        "xp_reward": badge.xp_reward,
    })
    return True


async def list_badges(db: AsyncSession) -> list[Badge]:
    try:
        result = await db.execute(select(Badge).order_by(Badge.sort_order, Badge.id))
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load badges: {exc}") from exc
    return list(result.scalars().all())


async def list_user_badges(db: AsyncSession, user_id: int) -> list[UserBadge]:
    """Badges the user has earned, most recent first."""
    try:
        result = await db.execute(
            select(UserBadge)
            .where(UserBadge.user_id == user_id)
            .order_by(UserBadge.earned_at.desc())
        )
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load user badges: {exc}") from exc
    return list(result.scalars().unique().all())
