"""XP, level and streak rules.

These functions hold no state and never touch the database; the
`GamificationService` in `services.py` applies them to a user row.

Rules:
- streak counts consecutive UTC calendar days with at least one attempt,
  whether or not the answer was correct
- a correct answer earns 10 XP plus a bonus equal to the new streak,
  capped at 5; a wrong answer earns nothing
- every `XP_PER_LEVEL` points are converted into one level
"""

from datetime import datetime, timezone
from typing import Optional, Tuple

BASE_XP = 10
MAX_STREAK_BONUS = 5
XP_PER_LEVEL = 100


def xp_needed_for_next_level(level: int) -> int:
    """Flat curve: every level costs the same."""
    return XP_PER_LEVEL


def _utc_date(value: datetime):
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).date()


def next_streak(streak: int, last_answer_at: Optional[datetime], now: datetime) -> int:
    """Return the streak after an attempt made at `now`."""
    if last_answer_at is None:
        return 1
    gap = (_utc_date(now) - _utc_date(last_answer_at)).days
    if gap <= 0:
        # same day, or a last answer stamped slightly in the future
        return streak
    if gap == 1:
        return streak + 1
    return 1


def xp_for_attempt(correct: bool, streak: int) -> int:
    if not correct:
        return 0
    return BASE_XP + min(streak, MAX_STREAK_BONUS)


def apply_xp(xp: int, level: int, award: int) -> Tuple[int, int]:
    """Add `award` to `xp` and convert whole thresholds into levels.

    Returns the normalized `(xp, level)` pair; several level-ups may happen
    for a single large award.
    """
    xp += award
    while xp >= xp_needed_for_next_level(level):
        xp -= xp_needed_for_next_level(level)
        level += 1
    return xp, level
