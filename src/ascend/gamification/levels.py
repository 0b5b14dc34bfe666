"""Level computation — constant XP-per-level model.

Level L spans cumulative XP ``[(L-1)*K, L*K)`` with K = ``XP_PER_LEVEL``.
``compute_level_info`` trusts the caller's stored level; only the award
routine derives a level from XP (``level_for_xp``).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from fractions import Fraction
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ascend.db.models import UserProgress

XP_PER_LEVEL = 100


@dataclass(frozen=True)
class LevelInfo:
    level: int
    xp_required: int  # XP needed to clear the current level
    xp_for_next_level: int  # cumulative threshold of the next level
    progress_percentage: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def _round_half_away_from_zero(value: Fraction) -> int:
    sign = -1 if value < 0 else 1
    return sign * int(abs(value) + Fraction(1, 2))


def compute_level_info(level: int, xp: int, xp_per_level: int = XP_PER_LEVEL) -> LevelInfo:
    """Compute display leveling info for a stored (level, xp) pair.

    The percentage is rounded once, half away from zero, from the exact
    ratio and clamped into [0, 100] so a level/xp desync never renders a
    negative or overfull bar.
    """
    floor_xp = (level - 1) * xp_per_level
    next_xp = level * xp_per_level
    needed = next_xp - floor_xp
    progress_in_level = xp - floor_xp

    percentage = _round_half_away_from_zero(Fraction(progress_in_level * 100, needed))
    percentage = max(0, min(100, percentage))

    return LevelInfo(
        level=level,
        xp_required=needed,
        xp_for_next_level=next_xp,
        progress_percentage=percentage,
    )


def level_info_for(progress: UserProgress | None, xp_per_level: int = XP_PER_LEVEL) -> LevelInfo | None:
    """Level info for a progress summary, or None when the user has none yet."""
    if progress is None:
        return None
    return compute_level_info(progress.level, progress.xp, xp_per_level)


def level_for_xp(xp: int, xp_per_level: int = XP_PER_LEVEL) -> int:
    """Level implied by cumulative XP alone."""
    return max(xp, 0) // xp_per_level + 1


def level_table(max_level: int = 50, xp_per_level: int = XP_PER_LEVEL) -> list[dict[str, int]]:
    """Threshold rows for levels 1..max_level."""
    return [
        {
            "level": level,
            "xp_required": xp_per_level,
            "cumulative": (level - 1) * xp_per_level,
        }
        for level in range(1, max_level + 1)
    ]
