"""Challenge engine — attempt lifecycle against a challenge's requirements.

Attempt states: in_progress -> completed | failed. Both outcomes are
terminal; there is no path back to in_progress.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import String, cast, exists, literal, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from ascend import events
from ascend.config import get_settings
from ascend.db.models import Challenge, UserBadge, UserChallenge, XPTransaction
from ascend.exceptions import (
    AlreadyStarted,
    AscendError,
    ChallengeClosed,
    InvalidRequirements,
    NotAuthenticated,
    NotFound,
    PartialAward,
    PersistenceFailed,
    ReadFailed,
    RecordFailed,
)
from ascend.gamification.badge_service import award_badge
from ascend.gamification.constants import (
    TERMINAL_STATUSES,
    ChallengeCategory,
    ChallengeDifficulty,
    ChallengeStatus,
    TransactionType,
)
from ascend.gamification.windows import as_utc
from ascend.gamification.xp_service import get_or_create_progress, record_transaction

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def merge_progress(existing: Mapping[str, Any] | None, delta: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge a progress delta. Delta values overwrite, they do not accumulate."""
    return {**(existing or {}), **(delta or {})}


def requirements_met(requirements: Mapping[str, Any] | None, progress: Mapping[str, Any]) -> bool:
    """True when every requirement key is present in progress at or above its threshold.

    An empty requirements map is vacuously met.
    """
    for key, threshold in (requirements or {}).items():
        if key not in progress:
            return False
        value = progress[key]
        if not _is_number(value) or value < threshold:
            return False
    return True


def challenge_progress_percentage(requirements: Mapping[str, Any] | None, progress: Mapping[str, Any] | None) -> int:
    """Share of requirement keys the attempt has reported, 0-100."""
    if not requirements:
        return 0
    reported = sum(1 for key in requirements if key in (progress or {}))
    return min(100, round(reported * 100 / len(requirements)))


def validate_requirements(requirements: Any) -> dict[str, float | int]:
    """Validate a requirements map at authoring time.

    Keys must be non-empty strings; values finite non-negative numbers.
    """
    if requirements is None:
        return {}
    if not isinstance(requirements, Mapping):
        raise InvalidRequirements("Requirements must be a mapping of metric name to threshold")

    cleaned: dict[str, float | int] = {}
    for key, threshold in requirements.items():
        if not isinstance(key, str) or not key.strip():
            raise InvalidRequirements("Requirement names must be non-empty strings", details={"key": key})
        if not _is_number(threshold) or not math.isfinite(threshold) or threshold < 0:
            raise InvalidRequirements(
                f"Requirement {key!r} must be a non-negative number",
                details={"key": key, "threshold": threshold},
            )
        cleaned[key] = threshold
    return cleaned


def validate_progress_delta(delta: Any) -> dict[str, float | int]:
    if delta is None:
        return {}
    if not isinstance(delta, Mapping):
        raise ValueError("Progress delta must be a mapping of metric name to value")
    for key, value in delta.items():
        if not isinstance(key, str) or not _is_number(value):
            raise ValueError(f"Progress value for {key!r} must be a number")
    return dict(delta)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_open(challenge: Challenge, now: datetime | None = None) -> bool:
    """Whether the challenge is active and inside its start/end window."""
    if not challenge.is_active:
        return False
    now = now or datetime.now(timezone.utc)
    start, end = as_utc(challenge.start_date), as_utc(challenge.end_date)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


# ---------------------------------------------------------------------------
# Challenge definitions
# ---------------------------------------------------------------------------


async def create_challenge(db: AsyncSession, data: Mapping[str, Any]) -> Challenge:
    """Author a new challenge. Requirements are validated before insert."""
    requirements = validate_requirements(data.get("requirements"))
    category = ChallengeCategory(data["category"]).value
    difficulty = ChallengeDifficulty(data["difficulty"]).value
    xp_reward = data["xp_reward"]
    if not isinstance(xp_reward, int) or isinstance(xp_reward, bool) or xp_reward <= 0:
        raise ValueError("xp_reward must be a positive integer")

    challenge = Challenge(
        title=data["title"],
        description=data["description"],
        category=category,
        difficulty=difficulty,
        xp_reward=xp_reward,
        requirements=requirements,
        badge_id=data.get("badge_id"),
        start_date=data.get("start_date"),
        end_date=data.get("end_date"),
        is_active=data.get("is_active", True),
        is_featured=data.get("is_featured", False),
        created_at=datetime.now(timezone.utc),
    )
    db.add(challenge)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceFailed(f"Could not create challenge: {exc}") from exc
    return challenge


async def list_challenges(db: AsyncSession, active_only: bool = True) -> list[Challenge]:
    """Challenges, featured first, then newest."""
    stmt = select(Challenge).order_by(Challenge.is_featured.desc(), Challenge.created_at.desc(), Challenge.id.desc())
    if active_only:
        stmt = stmt.where(Challenge.is_active.is_(True))
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load challenges: {exc}") from exc
    return list(result.scalars().all())


async def list_user_challenges(
    db: AsyncSession,
    user_id: int,
    status: str | None = None,
) -> list[UserChallenge]:
    """A user's attempts (with their challenge), newest first."""
    stmt = (
        select(UserChallenge)
        .where(UserChallenge.user_id == user_id)
        .order_by(UserChallenge.created_at.desc(), UserChallenge.id.desc())
    )
    if status is not None:
        stmt = stmt.where(UserChallenge.status == ChallengeStatus(status).value)
    try:
        result = await db.execute(stmt)
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load challenge attempts: {exc}") from exc
    return list(result.scalars().unique().all())


async def get_user_challenge(db: AsyncSession, user_challenge_id: int, user_id: int | None = None) -> UserChallenge:
    """Load an attempt with its challenge. Another user's attempt is reported as missing."""
    try:
        result = await db.execute(select(UserChallenge).where(UserChallenge.id == user_challenge_id))
        attempt = result.scalars().unique().one_or_none()
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load challenge attempt: {exc}") from exc
    if attempt is None or (user_id is not None and attempt.user_id != user_id):
        raise NotFound("Challenge attempt", user_challenge_id)
    return attempt


# ---------------------------------------------------------------------------
# Attempt lifecycle
# ---------------------------------------------------------------------------


async def start_challenge(
    db: AsyncSession,
    redis: object,
    user_id: int | None,
    challenge_id: int,
) -> UserChallenge:
    """Open a new in_progress attempt with empty progress."""
    if user_id is None:
        raise NotAuthenticated("You must be logged in to start a challenge")

    try:
        challenge = await db.get(Challenge, challenge_id)
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not load challenge: {exc}") from exc
    if challenge is None or not is_open(challenge):
        raise NotFound("Challenge", challenge_id)

    now = datetime.now(timezone.utc)
    attempt = UserChallenge(
        user_id=user_id,
        challenge=challenge,
        status=ChallengeStatus.IN_PROGRESS.value,
        progress={},
        started_at=now,
        completed_at=None,
        xp_earned=0,
        created_at=now,
    )
    db.add(attempt)
    try:
        await db.flush()
        progress = await get_or_create_progress(db, user_id)
        progress.total_challenges_started += 1
        progress.updated_at = now
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise AlreadyStarted(user_id, challenge_id) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceFailed(f"Could not start challenge: {exc}") from exc

    await events.publish_event(redis, events.CHALLENGE_UPDATED, {
        "user_id": user_id,
        "user_challenge_id": attempt.id,
        "challenge_id": challenge.id,
        "status": attempt.status,
    })
    return attempt


async def update_progress(
    db: AsyncSession,
    redis: object,
    user_challenge_id: int,
    progress_delta: Mapping[str, Any] | None,
    user_id: int | None = None,
) -> bool:
    """Merge a progress delta into an open attempt and complete it when requirements are met.

    The write is guarded by the attempt's version column: if another writer
    got in between our read and our flush, the transaction is rolled back
    and the merge is redone against the fresh row.
    """
    delta = validate_progress_delta(progress_delta)
    retries = max(1, get_settings().progress_update_retries)

    for attempt_no in range(1, retries + 1):
        attempt = await get_user_challenge(db, user_challenge_id, user_id)
        if attempt.status in TERMINAL_STATUSES:
            raise ChallengeClosed(user_challenge_id, attempt.status)

        challenge = attempt.challenge
        updated = merge_progress(attempt.progress, delta)
        completed = requirements_met(challenge.requirements, updated)
        now = datetime.now(timezone.utc)

        attempt.progress = updated
        if completed:
            attempt.status = ChallengeStatus.COMPLETED.value
            attempt.completed_at = now
            attempt.xp_earned = challenge.xp_reward
        else:
            attempt.status = ChallengeStatus.IN_PROGRESS.value
            attempt.xp_earned = 0

        try:
            await db.flush()
        except StaleDataError:
            await db.rollback()
            logger.info(
                "Concurrent update on challenge attempt %s (try %d/%d)",
                user_challenge_id, attempt_no, retries,
            )
            continue
        except SQLAlchemyError as exc:
            await db.rollback()
            raise PersistenceFailed(f"Could not update challenge progress: {exc}") from exc

        if completed:
            await _complete(db, redis, attempt, challenge)

        try:
            await db.commit()
        except StaleDataError:
            await db.rollback()
            events.discard_deferred(db)
            continue
        except SQLAlchemyError as exc:
            await db.rollback()
            events.discard_deferred(db)
            raise PersistenceFailed(f"Could not update challenge progress: {exc}") from exc

        await events.publish_deferred(db)
        await events.publish_event(redis, events.CHALLENGE_UPDATED, {
            "user_id": attempt.user_id,
            "user_challenge_id": attempt.id,
            "challenge_id": challenge.id,
            "status": attempt.status,
        })
        return True

    raise PersistenceFailed(
        "Challenge progress kept changing underneath the update; try again",
        details={"user_challenge_id": user_challenge_id, "attempts": retries},
    )


async def _complete(db: AsyncSession, redis: object, attempt: UserChallenge, challenge: Challenge) -> None:
    """Completion side effects: counters, XP award, badge.

    The XP award and the badge each run in their own savepoint. If either
    fails the completion stands and the gap is left for
    ``reconcile_challenge_awards``.
    """
    progress = await get_or_create_progress(db, attempt.user_id)
    progress.challenges_completed += 1
    progress.updated_at = datetime.now(timezone.utc)

    mark = events.pending_mark(db)
    try:
        async with db.begin_nested():
            await _award_completion(db, redis, attempt)
    except (AscendError, SQLAlchemyError) as exc:
        events.discard_deferred(db, since=mark)
        partial = PartialAward(
            f"Challenge {challenge.id} completed but XP award failed: {exc}",
            details={"user_id": attempt.user_id, "user_challenge_id": attempt.id, "challenge_id": challenge.id},
        )
        logger.error("Partial award: %s", partial.to_dict(), exc_info=True)

    if challenge.badge_id is not None:
        await _award_challenge_badge(db, redis, attempt, challenge)


async def _award_challenge_badge(db: AsyncSession, redis: object, attempt: UserChallenge, challenge: Challenge) -> bool:
    mark = events.pending_mark(db)
    try:
        async with db.begin_nested():
            return await award_badge(
                db, redis, attempt.user_id, challenge.badge_id, metadata={"challenge_id": challenge.id},
            )
    except (AscendError, SQLAlchemyError):
        events.discard_deferred(db, since=mark)
        logger.error(
            "Badge %s for challenge %s could not be awarded to user %s",
            challenge.badge_id, challenge.id, attempt.user_id, exc_info=True,
        )
        return False


def _award_key(attempt: UserChallenge) -> str:
    return f"challenge:{attempt.id}"


async def _award_completion(db: AsyncSession, redis: object, attempt: UserChallenge) -> bool:
    return await record_transaction(
        db,
        redis,
        attempt.user_id,
        attempt.xp_earned,
        TransactionType.CHALLENGE_COMPLETED.value,
        reference_id=str(attempt.challenge_id),
        reference_type="challenge",
        metadata={"user_challenge_id": attempt.id},
        idempotency_key=_award_key(attempt),
    )


async def abandon_challenge(
    db: AsyncSession,
    redis: object,
    user_challenge_id: int,
    user_id: int | None = None,
) -> bool:
    """Mark an open attempt failed. Progress and xp_earned are left untouched."""
    attempt = await get_user_challenge(db, user_challenge_id, user_id)
    if attempt.status in TERMINAL_STATUSES:
        raise ChallengeClosed(user_challenge_id, attempt.status)

    attempt.status = ChallengeStatus.FAILED.value
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceFailed(f"Could not abandon challenge: {exc}") from exc

    await events.publish_event(redis, events.CHALLENGE_UPDATED, {
        "user_id": attempt.user_id,
        "user_challenge_id": attempt.id,
        "challenge_id": attempt.challenge_id,
        "status": attempt.status,
    })
    return True


async def reconcile_challenge_awards(db: AsyncSession, redis: object, batch_size: int = 500) -> int:
    """Repair completed attempts whose XP row or linked badge is missing.

    Up to ``batch_size`` attempts of each kind are handled per call. Returns
    the number of XP awards recorded.
    """
    completed = UserChallenge.status == ChallengeStatus.COMPLETED.value
    xp_recorded = exists().where(
        XPTransaction.idempotency_key == literal("challenge:") + cast(UserChallenge.id, String)
    )
    badge_held = exists().where(
        UserBadge.user_id == UserChallenge.user_id,
        UserBadge.badge_id == Challenge.badge_id,
    )
    try:
        missing_xp = (await db.execute(
            select(UserChallenge)
            .where(completed, UserChallenge.xp_earned > 0, ~xp_recorded)
            .order_by(UserChallenge.id)
            .limit(batch_size)
        )).scalars().unique().all()
        missing_badges = (await db.execute(
            select(UserChallenge)
            .join(Challenge, UserChallenge.challenge_id == Challenge.id)
            .where(completed, Challenge.badge_id.is_not(None), ~badge_held)
            .order_by(UserChallenge.id)
            .limit(batch_size)
        )).scalars().unique().all()
    except SQLAlchemyError as exc:
        raise ReadFailed(f"Could not find attempts to reconcile: {exc}") from exc

    replayed = 0
    for attempt in missing_xp:
        mark = events.pending_mark(db)
        try:
            async with db.begin_nested():
                recorded = await _award_completion(db, redis, attempt)
        except (AscendError, SQLAlchemyError):
            events.discard_deferred(db, since=mark)
            logger.warning("Reconcile: award for attempt %s still failing", attempt.id, exc_info=True)
            continue
        replayed += int(recorded)

    badges = 0
    for attempt in missing_badges:
        if await _award_challenge_badge(db, redis, attempt, attempt.challenge):
            badges += 1

    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        events.discard_deferred(db)
        raise RecordFailed(f"Could not commit reconciled awards: {exc}") from exc
    await events.publish_deferred(db)

    if replayed or badges:
        logger.info("Reconciled %d missing challenge awards and %d badges", replayed, badges)
    return replayed
