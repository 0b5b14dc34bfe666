"""Profile completion tracking.

Completion is a weighted checklist over the user's profile fields; the
result is cached on ``user_progress.profile_completion_percentage``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ascend import events
from ascend.db.models import User
from ascend.exceptions import NotFound, PersistenceFailed
from ascend.gamification.xp_service import get_or_create_progress

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionStep:
    id: str
    title: str
    fields: tuple[str, ...]
    weight: int
    require_all: bool = True

    def is_complete(self, user: User) -> bool:
        filled = [bool((getattr(user, name, None) or "").strip()) for name in self.fields]
        return all(filled) if self.require_all else any(filled)


# Weights sum to 100.
COMPLETION_STEPS: tuple[CompletionStep, ...] = (
    CompletionStep("basic-info", "Basic Information", ("full_name", "bio", "location"), 30),
    CompletionStep("profile-image", "Profile Image", ("avatar_url",), 20),
    CompletionStep("professional-info", "Professional Details", ("company", "headline"), 30),
    CompletionStep("social-links", "Social Links", ("website",), 20, require_all=False),
)


def compute_profile_completion(user: User) -> int:
    """Percentage of the profile checklist the user has filled, 0-100."""
    return min(100, sum(step.weight for step in COMPLETION_STEPS if step.is_complete(user)))


def next_step(user: User) -> CompletionStep | None:
    """First unfinished checklist step, or None when the profile is complete."""
    return next((step for step in COMPLETION_STEPS if not step.is_complete(user)), None)


async def refresh_profile_completion(db: AsyncSession, user_id: int, redis: object = None) -> int:
    """Recompute and store the user's profile completion. Commits."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound("User", user_id)

    percentage = compute_profile_completion(user)
    try:
        progress = await get_or_create_progress(db, user_id)
        changed = progress.profile_completion_percentage != percentage
        progress.profile_completion_percentage = percentage
        progress.updated_at = datetime.now(timezone.utc)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceFailed(f"Could not store profile completion: {exc}") from exc

    if changed:
        logger.info("Profile completion for user %s is now %d%%", user_id, percentage)
        await events.publish_event(redis, events.PROGRESS_UPDATED, {
            "user_id": user_id,
            "profile_completion_percentage": percentage,
        })
    return percentage
