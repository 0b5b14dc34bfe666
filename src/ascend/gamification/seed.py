"""Seed data for badges and the starter challenge set."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ascend.db.models import Badge, Challenge

logger = logging.getLogger(__name__)

BADGE_SEED_DATA: list[dict] = [
    {
        "slug": "first_steps",
        "name": "First Steps",
        "description": "Complete your profile and your first onboarding challenge",
        "icon": "footprints",
        "category": "onboarding",
        "xp_reward": 25,
        "sort_order": 1,
    },
    {
        "slug": "pitch_perfect",
        "name": "Pitch Perfect",
        "description": "Publish three pitches on the idea board",
        "icon": "target",
        "category": "creativity",
        "xp_reward": 75,
        "sort_order": 2,
    },
    {
        "slug": "helpful_voice",
        "name": "Helpful Voice",
        "description": "Give feedback on ten pitches",
        "icon": "message-square",
        "category": "community",
        "xp_reward": 75,
        "sort_order": 3,
    },
    {
        "slug": "connector",
        "name": "Connector",
        "description": "Follow twenty founders and get ten followers back",
        "icon": "users",
        "category": "networking",
        "xp_reward": 100,
        "sort_order": 4,
    },
    {
        "slug": "mentee",
        "name": "Mentee",
        "description": "Complete your first mentor session",
        "icon": "star",
        "category": "mentorship",
        "xp_reward": 100,
        "sort_order": 5,
    },
    {
        "slug": "crowd_favourite",
        "name": "Crowd Favourite",
        "description": "Collect one hundred likes across your posts",
        "icon": "thumbs-up",
        "category": "recognition",
        "xp_reward": 150,
        "sort_order": 6,
    },
    {
        "slug": "verified_founder",
        "name": "Verified Founder",
        "description": "Verify your account",
        "icon": "badge-check",
        "category": "achievement",
        "xp_reward": 50,
        "sort_order": 7,
    },
]

CHALLENGE_SEED_DATA: list[dict] = [
    {
        "title": "Welcome aboard",
        "description": "Fill in your profile and publish your first post",
        "category": "onboarding",
        "difficulty": "beginner",
        "xp_reward": 50,
        "requirements": {"profile_completion": 100, "posts": 1},
        "badge_slug": "first_steps",
        "is_featured": True,
    },
    {
        "title": "Pitch it",
        "description": "Publish three pitches on the idea board",
        "category": "creativity",
        "difficulty": "intermediate",
        "xp_reward": 150,
        "requirements": {"pitches": 3},
        "badge_slug": "pitch_perfect",
        "is_featured": False,
    },
    {
        "title": "Feedback loop",
        "description": "Leave feedback on ten pitches from other founders",
        "category": "community",
        "difficulty": "intermediate",
        "xp_reward": 120,
        "requirements": {"pitch_feedback": 10},
        "badge_slug": "helpful_voice",
        "is_featured": False,
    },
    {
        "title": "Grow your network",
        "description": "Follow twenty people and gain ten followers",
        "category": "networking",
        "difficulty": "advanced",
        "xp_reward": 200,
        "requirements": {"following": 20, "followers": 10},
        "badge_slug": "connector",
        "is_featured": True,
    },
    {
        "title": "Learn from the best",
        "description": "Book and complete a mentor session",
        "category": "mentorship",
        "difficulty": "intermediate",
        "xp_reward": 150,
        "requirements": {"mentor_sessions": 1},
        "badge_slug": "mentee",
        "is_featured": False,
    },
    {
        "title": "Weekly regular",
        "description": "Log in on five days this week",
        "category": "engagement",
        "difficulty": "beginner",
        "xp_reward": 40,
        "requirements": {"login_days": 5},
        "badge_slug": None,
        "is_featured": False,
    },
    {
        "title": "Crowd pleaser",
        "description": "Collect one hundred likes across your posts",
        "category": "recognition",
        "difficulty": "expert",
        "xp_reward": 300,
        "requirements": {"post_likes": 100},
        "badge_slug": "crowd_favourite",
        "is_featured": False,
    },
]


async def seed_badges(db: AsyncSession) -> int:
    """Insert or update all badge definitions by slug. Returns number seeded."""
    existing = {b.slug: b for b in (await db.execute(select(Badge))).scalars()}
    now = datetime.now(timezone.utc)
    seeded = 0
    for badge_data in BADGE_SEED_DATA:
        badge = existing.get(badge_data["slug"])
        if badge is None:
            db.add(Badge(**badge_data, created_at=now))
        else:
            for field, value in badge_data.items():
                setattr(badge, field, value)
        seeded += 1

    await db.commit()
    logger.info("Seeded %d badge definitions", seeded)
    return seeded


async def seed_challenges(db: AsyncSession) -> int:
    """Insert starter challenges that are missing (matched by title). Returns number inserted."""
    badges = {b.slug: b.id for b in (await db.execute(select(Badge))).scalars()}
    titles = set((await db.execute(select(Challenge.title))).scalars())
    now = datetime.now(timezone.utc)
    inserted = 0
    for data in CHALLENGE_SEED_DATA:
        if data["title"] in titles:
            continue
        fields = {k: v for k, v in data.items() if k != "badge_slug"}
        db.add(Challenge(
            **fields,
            badge_id=badges.get(data["badge_slug"]) if data["badge_slug"] else None,
            is_active=True,
            created_at=now,
        ))
        inserted += 1

    await db.commit()
    logger.info("Seeded %d challenges", inserted)
    return inserted


async def seed_all(db: AsyncSession) -> None:
    await seed_badges(db)
    await seed_challenges(db)
