"""Activity feed projection — XP transactions rendered as feed items."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from ascend.gamification.constants import TransactionType

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ascend.db.models import XPTransaction

# transaction_type -> (label, icon)
ACTIVITY_LABELS: dict[str, tuple[str, str]] = {
    TransactionType.CHALLENGE_COMPLETED.value: ("Completed a challenge", "trophy"),
    TransactionType.BADGE_EARNED.value: ("Earned a new badge", "award"),
    TransactionType.PROFILE_UPDATE.value: ("Updated your profile", "users"),
    TransactionType.LOGIN_STREAK.value: ("Maintained login streak", "calendar"),
    TransactionType.PITCH_CREATED.value: ("Created a new pitch", "target"),
    TransactionType.PITCH_FEEDBACK.value: ("Provided feedback", "message-square"),
    TransactionType.MENTOR_SESSION.value: ("Completed mentor session", "star"),
    TransactionType.POST_LIKE.value: ("Received likes on post", "thumbs-up"),
    TransactionType.VERIFICATION.value: ("Account verified", "badge-check"),
}

FALLBACK_LABEL = ("Earned XP", "award")


@dataclass(frozen=True)
class ActivityDescription:
    id: int
    label: str
    icon: str
    amount: int
    transaction_type: str
    created_at: datetime


def describe(transaction: XPTransaction) -> ActivityDescription:
    """Describe a transaction. Unknown types get the generic label."""
    label, icon = ACTIVITY_LABELS.get(transaction.transaction_type, FALLBACK_LABEL)
    return ActivityDescription(
        id=transaction.id,
        label=label,
        icon=icon,
        amount=transaction.amount,
        transaction_type=transaction.transaction_type,
        created_at=transaction.created_at,
    )


def project_feed(transactions: Iterable[XPTransaction]) -> list[ActivityDescription]:
    return [describe(t) for t in transactions]
