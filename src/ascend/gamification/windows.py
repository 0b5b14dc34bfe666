"""Time window utilities for leaderboards and challenge availability.

All boundaries are UTC. A weekly window is the ISO week (Monday 00:00 to
the next Monday 00:00); a monthly window is the calendar month.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

from ascend.exceptions import NotFound
from ascend.gamification.constants import LEADERBOARD_WINDOWS, LeaderboardWindow


def as_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)."""
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def get_week_iso(dt: datetime) -> str:
    """ISO week string e.g. '2026-W09'."""
    return dt.strftime("%G-W%V")


def get_monday(dt: datetime | date) -> date:
    """Monday of the ISO week containing dt."""
    d = dt.date() if isinstance(dt, datetime) else dt
    return d - timedelta(days=d.weekday())


def get_week_boundaries(dt: datetime | None = None) -> tuple[datetime, datetime]:
    """(Monday 00:00 UTC, next Monday 00:00 UTC) for the ISO week containing dt."""
    if dt is None:
        dt = datetime.now(timezone.utc)
    start = datetime.combine(get_monday(as_utc(dt)), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=7)


def get_month_boundaries(dt: datetime | None = None) -> tuple[datetime, datetime]:
    """(1st 00:00 UTC, 1st of next month 00:00 UTC) for the month containing dt."""
    if dt is None:
        dt = datetime.now(timezone.utc)
    dt = as_utc(dt)
    start = datetime(dt.year, dt.month, 1, tzinfo=timezone.utc)
    if dt.month == 12:
        end = datetime(dt.year + 1, 1, 1, tzinfo=timezone.utc)
    else:
        end = datetime(dt.year, dt.month + 1, 1, tzinfo=timezone.utc)
    return start, end


def validate_window(window: str) -> str:
    """Return the canonical window name or raise NotFound."""
    value = window.value if isinstance(window, LeaderboardWindow) else str(window).lower()
    if value not in LEADERBOARD_WINDOWS:
        raise NotFound("Leaderboard window", window)
    return value


def window_boundaries(window: str, now: datetime | None = None) -> tuple[datetime, datetime]:
    """Half-open [start, end) boundaries of the window containing ``now``."""
    if validate_window(window) == LeaderboardWindow.WEEKLY.value:
        return get_week_boundaries(now)
    return get_month_boundaries(now)


def window_label(window: str, now: datetime | None = None) -> str:
    """Human label for the window containing ``now``: '2026-W09' or '2026-02'."""
    start, _ = window_boundaries(window, now)
    if validate_window(window) == LeaderboardWindow.WEEKLY.value:
        return get_week_iso(start)
    return start.strftime("%Y-%m")


def calculate_percentile(rank: int, total: int) -> float:
    """Percentile from rank and total participants.

    Rank 1 out of 100 -> 99.0 (top 1%)
    Rank 100 out of 100 -> 0.0 (bottom)
    """
    if total <= 0 or rank <= 0:
        return 0.0
    return round(100 - (rank / total * 100), 2)
