"""Fixed vocabularies for the gamification core."""

from __future__ import annotations

from enum import Enum


class TransactionType(str, Enum):
    CHALLENGE_COMPLETED = "challenge_completed"
    BADGE_EARNED = "badge_earned"
    PROFILE_UPDATE = "profile_update"
    LOGIN_STREAK = "login_streak"
    PITCH_CREATED = "pitch_created"
    PITCH_FEEDBACK = "pitch_feedback"
    MENTOR_SESSION = "mentor_session"
    POST_LIKE = "post_like"
    VERIFICATION = "verification"
    OTHER = "other"


class ChallengeStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


# An attempt in one of these states is never mutated again.
TERMINAL_STATUSES = frozenset({ChallengeStatus.COMPLETED.value, ChallengeStatus.FAILED.value})


class ChallengeCategory(str, Enum):
    ONBOARDING = "onboarding"
    PARTICIPATION = "participation"
    COMMUNITY = "community"
    NETWORKING = "networking"
    MENTORSHIP = "mentorship"
    ENGAGEMENT = "engagement"
    ACHIEVEMENT = "achievement"
    GROWTH = "growth"
    CREATIVITY = "creativity"
    RECOGNITION = "recognition"


class ChallengeDifficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"


class LeaderboardWindow(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"


LEADERBOARD_WINDOWS = frozenset(w.value for w in LeaderboardWindow)
