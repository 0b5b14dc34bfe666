"""Gamification API endpoints: challenges, progress, XP, leaderboard, badges."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ascend.auth.dependencies import get_current_user, get_current_user_id, get_optional_user_id
from ascend.config import get_settings
from ascend.db.models import User, UserChallenge
from ascend.dependencies import get_db, get_redis_dep
from ascend.exceptions import NotFound
from ascend.gamification import (
    activity,
    badge_service,
    challenge_service,
    leaderboard_service,
    profile_service,
    xp_service,
)
from ascend.gamification.constants import ChallengeStatus, LeaderboardWindow
from ascend.gamification.levels import level_info_for, level_table
from ascend.gamification.schemas import (
    ActivityItem,
    ActivityResponse,
    AllBadgesResponse,
    AllLevelsResponse,
    BadgeResponse,
    ChallengeCreateRequest,
    ChallengeListResponse,
    ChallengeResponse,
    EarnedBadgeResponse,
    LeaderboardEntryResponse,
    LeaderboardResponse,
    LevelEntry,
    LevelInfoResponse,
    MyProgressResponse,
    ProfileCompletionResponse,
    ProgressUpdateRequest,
    ProgressUpdateResponse,
    UserBadgesResponse,
    UserChallengeListResponse,
    UserChallengeResponse,
    UserProgressResponse,
    UserRankResponse,
    XPHistoryEntry,
    XPHistoryResponse,
)
from ascend.gamification.windows import calculate_percentile

router = APIRouter(prefix="/api/v1", tags=["Gamification"])


def _user_challenge_response(attempt: UserChallenge) -> UserChallengeResponse:
    return UserChallengeResponse(
        id=attempt.id,
        challenge_id=attempt.challenge_id,
        status=attempt.status,
        progress=attempt.progress or {},
        progress_percentage=challenge_service.challenge_progress_percentage(
            attempt.challenge.requirements, attempt.progress,
        ),
        xp_earned=attempt.xp_earned,
        started_at=attempt.started_at,
        completed_at=attempt.completed_at,
        challenge=ChallengeResponse.model_validate(attempt.challenge),
    )


# ── Challenges ──


@router.get("/challenges", response_model=ChallengeListResponse)
async def list_challenges(
    active_only: bool = Query(True),
    db: AsyncSession = Depends(get_db),
):
    """Challenge catalogue, featured first."""
    challenges = await challenge_service.list_challenges(db, active_only=active_only)
    return ChallengeListResponse(challenges=[ChallengeResponse.model_validate(c) for c in challenges])


@router.post("/challenges", response_model=ChallengeResponse, status_code=201)
async def create_challenge(
    body: ChallengeCreateRequest,
    _user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    challenge = await challenge_service.create_challenge(db, body.model_dump())
    return ChallengeResponse.model_validate(challenge)


@router.get("/users/me/challenges", response_model=UserChallengeListResponse)
async def my_challenges(
    status: ChallengeStatus | None = Query(None),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    attempts = await challenge_service.list_user_challenges(
        db, user_id, status=status.value if status else None,
    )
    return UserChallengeListResponse(challenges=[_user_challenge_response(a) for a in attempts])


@router.post("/challenges/{challenge_id}/start", response_model=UserChallengeResponse, status_code=201)
async def start_challenge(
    challenge_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    attempt = await challenge_service.start_challenge(db, redis, user_id, challenge_id)
    return _user_challenge_response(attempt)


@router.post("/users/me/challenges/{user_challenge_id}/progress", response_model=ProgressUpdateResponse)
async def update_challenge_progress(
    user_challenge_id: int,
    body: ProgressUpdateRequest,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    """Merge reported progress into one of the caller's open attempts."""
    updated = await challenge_service.update_progress(
        db, redis, user_challenge_id, body.progress, user_id=user_id,
    )
    attempt = await challenge_service.get_user_challenge(db, user_challenge_id, user_id)
    return ProgressUpdateResponse(
        updated=updated,
        completed=attempt.status == ChallengeStatus.COMPLETED.value,
        user_challenge=_user_challenge_response(attempt),
    )


@router.post("/users/me/challenges/{user_challenge_id}/abandon", response_model=UserChallengeResponse)
async def abandon_challenge(
    user_challenge_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    await challenge_service.abandon_challenge(db, redis, user_challenge_id, user_id=user_id)
    attempt = await challenge_service.get_user_challenge(db, user_challenge_id, user_id)
    return _user_challenge_response(attempt)


# ── Progress, XP, activity ──


@router.get("/users/me/progress", response_model=MyProgressResponse)
async def my_progress(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Progress summary with level info. Both are null before the first award."""
    view = await xp_service.get_user_progress(db, user_id)
    if view is None:
        return MyProgressResponse()
    info = level_info_for(view, get_settings().xp_per_level)
    return MyProgressResponse(
        progress=UserProgressResponse(**asdict(view)),
        level_info=LevelInfoResponse(**info.as_dict()),
    )


@router.post("/users/me/profile-completion", response_model=ProfileCompletionResponse)
async def refresh_profile_completion(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis: object = Depends(get_redis_dep),
):
    percentage = await profile_service.refresh_profile_completion(db, user.id, redis=redis)
    step = profile_service.next_step(user) if percentage < 100 else None
    return ProfileCompletionResponse(
        profile_completion_percentage=percentage,
        next_step=step.title if step else None,
    )


@router.get("/users/me/xp/history", response_model=XPHistoryResponse)
async def my_xp_history(
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    entries, total = await xp_service.get_xp_history(db, user_id, page=page, per_page=per_page)
    return XPHistoryResponse(
        entries=[
            XPHistoryEntry(
                id=e.id,
                amount=e.amount,
                transaction_type=e.transaction_type,
                reference_id=e.reference_id,
                reference_type=e.reference_type,
                created_at=e.created_at,
            )
            for e in entries
        ],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get("/users/me/activity", response_model=ActivityResponse)
async def my_activity(
    limit: int | None = Query(None, ge=1, le=100),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Recent XP transactions rendered as feed items."""
    limit = limit or get_settings().recent_activity_limit
    transactions = await xp_service.list_recent(db, user_id, limit=limit)
    return ActivityResponse(
        items=[ActivityItem(**asdict(item)) for item in activity.project_feed(transactions)],
    )


# ── Leaderboard ──


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    window: str = Query(LeaderboardWindow.WEEKLY.value),
    limit: int | None = Query(None, ge=1),
    user_id: int | None = Depends(get_optional_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Pre-ranked entries for a window, rank 1 first."""
    settings = get_settings()
    limit = min(limit or settings.leaderboard_default_limit, settings.leaderboard_max_limit)
    entries = await leaderboard_service.get_leaderboard(db, window, limit)
    return LeaderboardResponse(
        window=window.lower(),
        entries=[
            LeaderboardEntryResponse(
                rank=e.rank,
                user_id=e.user_id,
                username=e.username,
                full_name=e.full_name,
                avatar_url=e.avatar_url,
                level=e.level,
                xp=e.xp,
                window_xp=e.window_xp,
                is_current_user=user_id is not None and e.user_id == user_id,
            )
            for e in entries
        ],
    )


@router.get("/users/me/rank", response_model=UserRankResponse)
async def my_rank(
    window: str = Query(LeaderboardWindow.WEEKLY.value),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """The caller's rank in a window; rank 0 when unranked."""
    entry = await leaderboard_service.get_user_rank(db, window, user_id)
    total = await leaderboard_service.count_ranked(db, window)
    if entry is None:
        return UserRankResponse(window=window.lower(), rank=0, window_xp=0, total=total, percentile=0.0)
    return UserRankResponse(
        window=window.lower(),
        rank=entry.rank,
        window_xp=entry.window_xp,
        total=total,
        percentile=calculate_percentile(entry.rank, total),
    )


# ── Badges & levels ──


@router.get("/badges", response_model=AllBadgesResponse)
async def list_badges(db: AsyncSession = Depends(get_db)):
    badges = await badge_service.list_badges(db)
    return AllBadgesResponse(badges=[BadgeResponse.model_validate(b) for b in badges])


@router.get("/badges/{slug}", response_model=BadgeResponse)
async def get_badge(slug: str, db: AsyncSession = Depends(get_db)):
    badge = await badge_service.get_badge_by_slug(db, slug)
    if badge is None:
        raise NotFound("Badge", slug)
    return BadgeResponse.model_validate(badge)


@router.get("/users/me/badges", response_model=UserBadgesResponse)
async def my_badges(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    earned = await badge_service.list_user_badges(db, user_id)
    available = await badge_service.list_badges(db)
    return UserBadgesResponse(
        earned=[
            EarnedBadgeResponse(
                badge=BadgeResponse.model_validate(ub.badge),
                earned_at=ub.earned_at,
                metadata=ub.badge_metadata or {},
            )
            for ub in earned
        ],
        total_available=len(available),
        total_earned=len(earned),
    )


@router.get("/levels", response_model=AllLevelsResponse)
async def list_levels(max_level: int = Query(50, ge=1, le=500)):
    xp_per_level = get_settings().xp_per_level
    return AllLevelsResponse(
        xp_per_level=xp_per_level,
        levels=[LevelEntry(**row) for row in level_table(max_level, xp_per_level)],
    )
