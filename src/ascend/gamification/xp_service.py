"""XP ledger: award routine with idempotency, recent history and progress summary."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ascend import events
from ascend.config import get_settings
from ascend.db.models import User, UserProgress, XPTransaction
from ascend.exceptions import NotFound, ReadFailed, RecordFailed
from ascend.gamification.levels import level_for_xp

logger = logging.getLogger(__name__)


@dataclass
class UserProgressView:
    """Progress summary joined with the user's display identity."""

    user_id: int
    username: str
    full_name: str | None
    avatar_url: str | None
    level: int
    xp: int
    total_challenges_started: int
    challenges_completed: int
    badges_earned: int
    total_xp_earned: int
    profile_completion_percentage: int


async def get_or_create_progress(db: AsyncSession, user_id: int) -> UserProgress:
    """Get or create the denormalized progress row for a user."""
    result = await db.execute(
        select(UserProgress).where(UserProgress.user_id == user_id)
    )
    progress = result.scalar_one_or_none()
    if progress is None:
        progress = UserProgress(
            user_id=user_id,
            level=1,
            xp=0,
            total_challenges_started=0,
            challenges_completed=0,
            badges_earned=0,
            total_xp_earned=0,
            profile_completion_percentage=0,
            updated_at=datetime.now(timezone.utc),
        )
        db.add(progress)
        await db.flush()
    return progress


async def get_user_progress(db: AsyncSession, user_id: int) -> UserProgressView | None:
    """Return the user's progress summary, or None if they have no row yet."""
    try:
        result = await db.execute(
            select(UserProgress, User)
            .join(User, UserProgress.user_id == User.id)
            .where(UserProgress.user_id == user_id)
        )
        row = result.one_or_none()
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load progress: {exc}") from exc

    if row is None:
        return None
    progress, user = row.UserProgress, row.User
    return UserProgressView(
        user_id=user.id,
        username=user.username,
        full_name=user.full_name,
        avatar_url=user.avatar_url,
        level=progress.level,
        xp=progress.xp,
        total_challenges_started=progress.total_challenges_started,
        challenges_completed=progress.challenges_completed,
        badges_earned=progress.badges_earned,
        total_xp_earned=progress.total_xp_earned,
        profile_completion_percentage=progress.profile_completion_percentage,
    )


async def record_transaction(
    db: AsyncSession,
    redis: object,
    user_id: int,
    amount: int,
    transaction_type: str,
    reference_id: str | None = None,
    reference_type: str | None = None,
    metadata: dict[str, Any] | None = None,
    idempotency_key: str | None = None,
) -> bool:
    """Append an XP transaction and credit it to the user's progress summary.

    Returns True if recorded, False if ``idempotency_key`` was already used.
    Does not commit; the caller owns the transaction.

    After recording:
    1. Insert into xp_transactions
    2. Increase user_progress.xp and total_xp_earned by amount
    3. Advance user_progress.level if it lags the XP-derived level
    4. Queue xp_awarded (and level_up) on the session; the caller publishes
       them with ``events.publish_deferred`` after committing
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"XP amount must be a positive integer, got {amount!r}")
    transaction_type = transaction_type.value if isinstance(transaction_type, Enum) else str(transaction_type)

    try:
        user = await db.get(User, user_id)
        if user is None:
            raise NotFound("User", user_id)

        if idempotency_key is not None:
            existing = await db.execute(
                select(XPTransaction.id).where(XPTransaction.idempotency_key == idempotency_key)
            )
            if existing.scalar_one_or_none() is not None:
                return False

        now = datetime.now(timezone.utc)
        entry = XPTransaction(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            reference_id=reference_id,
            reference_type=reference_type,
            transaction_metadata=metadata,
            idempotency_key=idempotency_key,
            created_at=now,
        )
        db.add(entry)

        progress = await get_or_create_progress(db, user_id)
        old_level = progress.level
        progress.xp += amount
        progress.total_xp_earned += amount

        # Stored level is only ever raised here, never lowered.
        derived = level_for_xp(progress.xp, get_settings().xp_per_level)
        if derived > progress.level:
            progress.level = derived
        progress.updated_at = now

        await db.flush()
    except SQLAlchemyError as exc:
        raise RecordFailed(
            f"Could not record XP transaction: {exc}",
            details={"user_id": user_id, "amount": amount, "type": transaction_type},
        ) from exc

    events.defer_event(db, redis, events.XP_AWARDED, {
        "user_id": user_id,
        "amount": amount,
        "transaction_type": transaction_type,
        "reference_id": reference_id,
        "xp": progress.xp,
    })
    if progress.level > old_level:
        logger.info("User %s levelled up %d -> %d", user_id, old_level, progress.level)
        events.defer_event(db, redis, events.LEVEL_UP, {
            "user_id": user_id,
            "old_level": old_level,
            "new_level": progress.level,
        })

    return True


async def award_xp(
    db: AsyncSession,
    redis: object,
    user_id: int,
    amount: int,
    transaction_type: str,
    reference_id: str | None = None,
) -> bool:
    """Record an XP transaction and commit it."""
    recorded = await record_transaction(
        db, redis, user_id, amount, transaction_type, reference_id=reference_id,
    )
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        events.discard_deferred(db)
        raise RecordFailed(f"Could not commit XP transaction: {exc}") from exc
    await events.publish_deferred(db)
    return recorded


async def list_recent(db: AsyncSession, user_id: int, limit: int = 10) -> list[XPTransaction]:
    """Most recent transactions for a user, newest first."""
    try:
        result = await db.execute(
            select(XPTransaction)
            .where(XPTransaction.user_id == user_id)
            .order_by(XPTransaction.created_at.desc(), XPTransaction.id.desc())
            .limit(limit)
        )
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load XP transactions: {exc}") from exc
    return list(result.scalars().all())


async def get_xp_history(
    db: AsyncSession,
    user_id: int,
    page: int = 1,
    per_page: int = 50,
) -> tuple[list[XPTransaction], int]:
    """Paginated XP history, newest first."""
    offset = (page - 1) * per_page
    try:
        total_result = await db.execute(
            select(func.count()).select_from(XPTransaction).where(XPTransaction.user_id == user_id)
        )
        total = total_result.scalar_one()

        result = await db.execute(
            select(XPTransaction)
            .where(XPTransaction.user_id == user_id)
            .order_by(XPTransaction.created_at.desc(), XPTransaction.id.desc())
            .offset(offset)
            .limit(per_page)
        )
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load XP history: {exc}") from exc
    return list(result.scalars().all()), total
