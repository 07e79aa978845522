"""Low-score reminders.

The job is meant to be triggered periodically by an external scheduler. It
finds users whose adjusted score lags behind their housemates and hands them
to a notifier; delivery (e-mail or otherwise) is up to the notifier.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import TYPE_CHECKING, Dict, List, Protocol

from .scoring import get_adjusted_scores
from .time_utils import get_today

if TYPE_CHECKING:
    from .absences import AbsenceStore
    from .chores import ChoreActivityStore, ChoreList, ChoreListStore
    from .users import User, UserStore

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify_low_score(self, user: "User", chore_lists: List["ChoreList"]) -> None: ...


class LoggingNotifier:
    """Notifier that only records the reminder in the log."""

    def notify_low_score(self, user: "User", chore_lists: List["ChoreList"]) -> None:
        logger.info(
            "Low score reminder for %s (%s): %s",
            user.name,
            user.handle,
            ", ".join(cl.name for cl in chore_lists),
        )


def find_low_score_users(
    user_store: "UserStore",
    chore_list_store: "ChoreListStore",
    activity_store: "ChoreActivityStore",
    absence_store: "AbsenceStore",
    threshold_percent: int,
    today: date | None = None,
) -> Dict[uuid.UUID, List[uuid.UUID]]:
    """Map each low-scoring user to the chore lists they are low in.

    A user is low in a list when their adjusted score is below
    ``threshold_percent`` of the mean adjusted score of all active users.
    Lists nobody scored in are skipped.
    """
    if today is None:
        today = get_today()
    user_ids = [u.id for u in user_store.list_users()]
    if not user_ids:
        return {}

    low: Dict[uuid.UUID, List[uuid.UUID]] = {}
    for chore_list in chore_list_store.list_chore_lists():
        adjusted = {
            s.user_id: s.adjusted_score
            for s in get_adjusted_scores(chore_list, activity_store, absence_store, today)
        }
        mean = sum(adjusted.get(user_id, 0) for user_id in user_ids) / len(user_ids)
        if mean <= 0:
            continue
        limit = mean * threshold_percent / 100
        for user_id in user_ids:
            if adjusted.get(user_id, 0) < limit:
                low.setdefault(user_id, []).append(chore_list.id)
    return low


def low_score_reminder(
    notifier: Notifier,
    user_store: "UserStore",
    chore_list_store: "ChoreListStore",
    activity_store: "ChoreActivityStore",
    absence_store: "AbsenceStore",
    threshold_percent: int,
    today: date | None = None,
) -> int:
    """Notify every low-scoring user. Returns the number of users notified."""
    low_score_users = find_low_score_users(
        user_store,
        chore_list_store,
        activity_store,
        absence_store,
        threshold_percent,
        today,
    )
    chore_lists = {cl.id: cl for cl in chore_list_store.list_chore_lists()}

    notified = 0
    for user_id, chore_list_ids in low_score_users.items():
        user = user_store.get(user_id)
        if not user:
            continue
        try:
            notifier.notify_low_score(user, [chore_lists[i] for i in chore_list_ids])
        except Exception:
            logger.exception("Failed to send low score reminder to user %s", user_id)
            continue
        notified += 1
    return notified
