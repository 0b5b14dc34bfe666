"""Pydantic request/response models for gamification endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ascend.gamification.constants import ChallengeCategory, ChallengeDifficulty, ChallengeStatus


# --- Challenges ---


class ChallengeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str
    category: str
    difficulty: str
    xp_reward: int
    requirements: dict[str, float]
    badge_id: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool
    is_featured: bool
    created_at: datetime


class ChallengeListResponse(BaseModel):
    challenges: list[ChallengeResponse]


class ChallengeCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str
    category: ChallengeCategory
    difficulty: ChallengeDifficulty
    xp_reward: int = Field(gt=0)
    # Checked by the challenge service so malformed maps map to InvalidRequirements.
    requirements: dict[str, Any] = {}
    badge_id: int | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    is_active: bool = True
    is_featured: bool = False


class UserChallengeResponse(BaseModel):
    id: int
    challenge_id: int
    status: ChallengeStatus
    progress: dict[str, float]
    progress_percentage: int
    xp_earned: int
    started_at: datetime | None = None
    completed_at: datetime | None = None
    challenge: ChallengeResponse


class UserChallengeListResponse(BaseModel):
    challenges: list[UserChallengeResponse]


class ProgressUpdateRequest(BaseModel):
    progress: dict[str, float]


class ProgressUpdateResponse(BaseModel):
    updated: bool
    completed: bool
    user_challenge: UserChallengeResponse


# --- Progress & levels ---


class LevelInfoResponse(BaseModel):
    level: int
    xp_required: int
    xp_for_next_level: int
    progress_percentage: int


class UserProgressResponse(BaseModel):
    user_id: int
    username: str
    full_name: str | None = None
    avatar_url: str | None = None
    level: int
    xp: int
    total_challenges_started: int
    challenges_completed: int
    badges_earned: int
    total_xp_earned: int
    profile_completion_percentage: int


class MyProgressResponse(BaseModel):
    progress: UserProgressResponse | None = None
    level_info: LevelInfoResponse | None = None


class LevelEntry(BaseModel):
    level: int
    xp_required: int
    cumulative: int


class AllLevelsResponse(BaseModel):
    xp_per_level: int
    levels: list[LevelEntry]


class ProfileCompletionResponse(BaseModel):
    profile_completion_percentage: int
    next_step: str | None = None


# --- XP & activity ---


class XPHistoryEntry(BaseModel):
    id: int
    amount: int
    transaction_type: str
    reference_id: str | None = None
    reference_type: str | None = None
    created_at: datetime


class XPHistoryResponse(BaseModel):
    entries: list[XPHistoryEntry]
    total: int
    page: int
    per_page: int


class ActivityItem(BaseModel):
    id: int
    label: str
    icon: str
    amount: int
    transaction_type: str
    created_at: datetime


class ActivityResponse(BaseModel):
    items: list[ActivityItem]


# --- Leaderboard ---


class LeaderboardEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rank: int
    user_id: int
    username: str
    full_name: str | None = None
    avatar_url: str | None = None
    level: int
    xp: int
    window_xp: int
    is_current_user: bool = False


class LeaderboardResponse(BaseModel):
    window: str
    entries: list[LeaderboardEntryResponse]


class UserRankResponse(BaseModel):
    window: str
    rank: int
    window_xp: int
    total: int
    percentile: float


# --- Badges ---


class BadgeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    slug: str
    name: str
    description: str
    icon: str
    category: str | None = None
    xp_reward: int


class AllBadgesResponse(BaseModel):
    badges: list[BadgeResponse]


class EarnedBadgeResponse(BaseModel):
    badge: BadgeResponse
    earned_at: datetime
    metadata: dict = {}


class UserBadgesResponse(BaseModel):
    earned: list[EarnedBadgeResponse]
    total_available: int
    total_earned: int
