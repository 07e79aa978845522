"""Point totals per user and their adjustment for absences.

A user who was absent for part of the scoring window is not penalised for
chores they could not do: their score is scaled up as if they had been
present for the whole window.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from .absences import Absence, AbsenceStore, count_absent_days
from .chores import ChoreActivityStore, ChoreList
from .time_utils import get_today


@dataclass
class UserScore:
    user_id: uuid.UUID
    raw_score: int
    adjusted_score: int


def _round_half_away_from_zero(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def scoring_window(
    chore_list: ChoreList,
    activity_store: ChoreActivityStore,
    today: date | None = None,
) -> Tuple[date, Optional[date]]:
    """Return the start and, if bounded, the end of the current scoring window.

    Lists that never reset score from their oldest activity on; without any
    activity the window starts today.
    """
    if today is None:
        today = get_today()
    window = chore_list.score_reset_interval.current_window(today)
    if window is not None:
        return window
    oldest = activity_store.oldest_date_for_chore_list(chore_list.id)
    return (oldest or today), None


def adjust_score(
    score: int,
    window_start: date,
    absences: Iterable[Absence],
    today: date | None = None,
) -> int:
    """Prorate ``score`` by the share of the window the user was present.

    ``absences`` must belong to a single user. The score is returned as is
    when it is zero, when the user was never absent, or when no day of the
    window was spent present.
    """
    if today is None:
        today = get_today()
    interval_passed_days = (today - window_start).days + 1
    if interval_passed_days <= 0:
        return score

    absent_days = count_absent_days(absences, window_start, today)
    present_days = interval_passed_days - absent_days

    if score == 0 or absent_days == 0 or present_days == 0:
        return score
    return _round_half_away_from_zero(score / present_days * interval_passed_days)


def get_adjusted_scores(
    chore_list: ChoreList,
    activity_store: ChoreActivityStore,
    absence_store: AbsenceStore,
    today: date | None = None,
) -> List[UserScore]:
    """Raw and absence-adjusted score of every user with points in ``chore_list``.

    Ordered by raw score, highest first.
    """
    if today is None:
        today = get_today()
    window_start, window_end = scoring_window(chore_list, activity_store, today)
    raw_scores = activity_store.score_per_user(chore_list.id, window_start, window_end)
    if not raw_scores:
        return []

    absences_by_user: Dict[uuid.UUID, List[Absence]] = {}
    for absence in absence_store.list_active_in_period(window_start, today):
        absences_by_user.setdefault(absence.user_id, []).append(absence)

    return [
        UserScore(
            user_id=user_id,
            raw_score=score,
            adjusted_score=adjust_score(
                score, window_start, absences_by_user.get(user_id, []), today
            ),
        )
        for user_id, score in raw_scores
    ]
