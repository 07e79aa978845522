from __future__ import annotations

import logging
import threading
import uuid
import datetime as dt
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Field, Session, SQLModel, select

from .time_utils import ensure_tz, get_now, get_today, local_date, to_utc
from .users import User
from .values import (
    ChoreActivityId,
    ChoreId,
    ChoreListId,
    ScoreResetInterval,
    UserId,
    new_id,
)


logger = logging.getLogger(__name__)

# Activities may be logged for today and the two days before, and only
# activities inside that window may be edited.
ACTIVITY_EDIT_DAYS = 2


class ChoreList(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=new_id, primary_key=True)
    name: str
    description: Optional[str] = None
    score_reset_interval: ScoreResetInterval = ScoreResetInterval.Never
    date_created: datetime = Field(default_factory=get_now)
    date_deleted: Optional[datetime] = None

    def is_deleted(self) -> bool:
        return self.date_deleted is not None


class Chore(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=new_id, primary_key=True)
    chore_list_id: uuid.UUID = Field(foreign_key="chorelist.id", index=True)
    name: str
    points: int = 0
    interval_days: Optional[int] = None
    next_due_date: Optional[date] = None
    description: Optional[str] = None
    date_created: datetime = Field(default_factory=get_now)
    date_deleted: Optional[datetime] = None

    def is_deleted(self) -> bool:
        return self.date_deleted is not None

    def is_due(self, today: date | None = None) -> Optional[bool]:
        """Return whether the chore is due, or ``None`` if it does not recur."""
        if self.next_due_date is None:
            return None
        if today is None:
            today = get_today()
        return self.next_due_date <= today


class ChoreActivity(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=new_id, primary_key=True)
    chore_id: uuid.UUID = Field(foreign_key="chore.id", index=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    date: dt.date
    comment: Optional[str] = None
    date_created: datetime = Field(default_factory=get_now)
    date_deleted: Optional[datetime] = None

    def is_deleted(self) -> bool:
        return self.date_deleted is not None


def _normalize(obj):
    obj.date_created = ensure_tz(obj.date_created)
    obj.date_deleted = ensure_tz(obj.date_deleted)
    return obj


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _validate_chore(chore: Chore) -> None:
    if not chore.name or not chore.name.strip():
        raise ValueError("Chore requires a name")
    if chore.points is None or chore.points < 0:
        raise ValueError("Chore points must be a non-negative integer")
    if chore.interval_days is not None and chore.interval_days < 1:
        raise ValueError("Chore interval must be at least one day")


def update_next_due_date(chore: Chore, last_activity_date: Optional[date]) -> bool:
    """Bring ``chore.next_due_date`` in line with its interval.

    ``last_activity_date`` is the date of the chore's most recent non-deleted
    activity, or ``None`` when there is none, in which case the chore's
    creation date is used. Returns ``True`` if the due date changed.
    """
    if chore.interval_days is None:
        if chore.next_due_date is not None:
            chore.next_due_date = None
            return True
        return False

    if last_activity_date is None:
        last_activity_date = local_date(chore.date_created)
    next_due_date = last_activity_date + timedelta(days=chore.interval_days)
    if chore.next_due_date != next_due_date:
        chore.next_due_date = next_due_date
        return True
    return False


_due_date_locks: Dict[ChoreId, threading.Lock] = {}
_due_date_locks_guard = threading.Lock()


def _due_date_lock(chore_id: ChoreId) -> threading.Lock:
    with _due_date_locks_guard:
        lock = _due_date_locks.get(chore_id)
        if lock is None:
            lock = _due_date_locks[chore_id] = threading.Lock()
        return lock


def _forget_due_date_lock(chore_id: ChoreId) -> None:
    with _due_date_locks_guard:
        _due_date_locks.pop(chore_id, None)


def _latest_activity_date(session: Session, chore_id: ChoreId) -> Optional[date]:
    return session.exec(
        select(ChoreActivity.date)
        .where(ChoreActivity.chore_id == chore_id)
        .where(ChoreActivity.date_deleted.is_(None))
        .order_by(ChoreActivity.date.desc())
    ).first()


def group_activities_by_date(
    activities: List[ChoreActivity], latest_first: bool = True
) -> List[Tuple[date, List[ChoreActivity]]]:
    ordered = sorted(activities, key=lambda a: (a.date, ensure_tz(a.date_created)))
    if latest_first:
        ordered.reverse()
    groups: List[Tuple[date, List[ChoreActivity]]] = []
    for activity in ordered:
        if groups and groups[-1][0] == activity.date:
            groups[-1][1].append(activity)
        else:
            groups.append((activity.date, [activity]))
    return groups


def activity_date_bounds(today: date | None = None) -> Tuple[date, date]:
    """Return the earliest and latest dates an activity may be logged for."""
    if today is None:
        today = get_today()
    return today - timedelta(days=ACTIVITY_EDIT_DAYS), today


def is_activity_editable(activity: ChoreActivity, today: date | None = None) -> bool:
    min_date, _ = activity_date_bounds(today)
    return activity.date >= min_date


class ChoreListStore:
    """CRUD helper for :class:`ChoreList` objects."""

    def __init__(self, engine):
        self.engine = engine

    def list_chore_lists(self, include_deleted: bool = False) -> List[ChoreList]:
        with Session(self.engine) as session:
            stmt = select(ChoreList)
            if not include_deleted:
                stmt = stmt.where(ChoreList.date_deleted.is_(None))
            return [_normalize(cl) for cl in session.exec(stmt.order_by(ChoreList.name)).all()]

    def get(self, chore_list_id: ChoreListId) -> Optional[ChoreList]:
        with Session(self.engine) as session:
            chore_list = session.get(ChoreList, chore_list_id)
            return _normalize(chore_list) if chore_list else None

    def create(
        self,
        name: str,
        description: Optional[str] = None,
        score_reset_interval: ScoreResetInterval = ScoreResetInterval.Never,
    ) -> ChoreList:
        if not name or not name.strip():
            raise ValueError("Chore list requires a name")
        chore_list = ChoreList(
            name=name.strip(),
            description=_clean_text(description),
            score_reset_interval=ScoreResetInterval(score_reset_interval),
            date_created=to_utc(get_now()),
        )
        with Session(self.engine) as session:
            session.add(chore_list)
            session.commit()
            session.refresh(chore_list)
            logger.info("Created chore list %s (%s)", chore_list.id, chore_list.name)
            return _normalize(chore_list)

    def update(self, chore_list: ChoreList) -> None:
        if not chore_list.name or not chore_list.name.strip():
            raise ValueError("Chore list requires a name")
        with Session(self.engine) as session:
            stored = session.get(ChoreList, chore_list.id)
            if not stored:
                return
            stored.name = chore_list.name.strip()
            stored.description = _clean_text(chore_list.description)
            stored.score_reset_interval = ScoreResetInterval(chore_list.score_reset_interval)
            session.add(stored)
            session.commit()
            logger.info("Updated chore list %s", chore_list.id)

    def delete(self, chore_list_id: ChoreListId) -> bool:
        return self._set_deleted(chore_list_id, to_utc(get_now()))

    def restore(self, chore_list_id: ChoreListId) -> bool:
        return self._set_deleted(chore_list_id, None)

    def _set_deleted(self, chore_list_id: ChoreListId, when: Optional[datetime]) -> bool:
        with Session(self.engine) as session:
            chore_list = session.get(ChoreList, chore_list_id)
            if not chore_list or (chore_list.date_deleted is None) == (when is None):
                return False
            chore_list.date_deleted = when
            session.add(chore_list)
            session.commit()
            logger.info(
                "%s chore list %s", "Deleted" if when else "Restored", chore_list_id
            )
            return True


class ChoreStore:
    """CRUD helper for :class:`Chore` objects, including due-date upkeep."""

    def __init__(self, engine):
        self.engine = engine

    def list_for_chore_list(
        self, chore_list_id: ChoreListId, include_deleted: bool = False
    ) -> List[Chore]:
        with Session(self.engine) as session:
            stmt = select(Chore).where(Chore.chore_list_id == chore_list_id)
            if not include_deleted:
                stmt = stmt.where(Chore.date_deleted.is_(None))
            return [_normalize(c) for c in session.exec(stmt.order_by(Chore.points)).all()]

    def list_due(self, today: date | None = None) -> List[Chore]:
        if today is None:
            today = get_today()
        with Session(self.engine) as session:
            stmt = (
                select(Chore)
                .where(Chore.next_due_date.is_not(None))
                .where(Chore.next_due_date <= today)
                .where(Chore.date_deleted.is_(None))
                .order_by(Chore.points)
            )
            return [_normalize(c) for c in session.exec(stmt).all()]

    def get(self, chore_id: ChoreId) -> Optional[Chore]:
        with Session(self.engine) as session:
            chore = session.get(Chore, chore_id)
            return _normalize(chore) if chore else None

    def create(self, chore: Chore) -> Chore:
        chore.name = (chore.name or "").strip()
        chore.description = _clean_text(chore.description)
        _validate_chore(chore)
        chore.date_created = to_utc(chore.date_created or get_now())
        update_next_due_date(chore, None)
        with Session(self.engine) as session:
            session.add(chore)
            session.commit()
            session.refresh(chore)
            logger.info("Created chore %s (%s)", chore.id, chore.name)
            return _normalize(chore)

    def update(self, chore: Chore) -> None:
        """Write the editable fields of ``chore`` and refresh its due date.

        ``next_due_date`` is derived, so the caller's value is ignored and
        ``chore`` receives the recomputed one.
        """
        chore.name = (chore.name or "").strip()
        chore.description = _clean_text(chore.description)
        _validate_chore(chore)
        with _due_date_lock(chore.id):
            with Session(self.engine) as session:
                stored = session.get(Chore, chore.id)
                if not stored:
                    return
                stored.name = chore.name
                stored.points = chore.points
                stored.interval_days = chore.interval_days
                stored.description = chore.description
                update_next_due_date(stored, _latest_activity_date(session, chore.id))
                chore.next_due_date = stored.next_due_date
                session.add(stored)
                session.commit()
                logger.info("Updated chore %s", chore.id)

    def delete(self, chore_id: ChoreId) -> bool:
        deleted = self._set_deleted(chore_id, to_utc(get_now()))
        if deleted:
            _forget_due_date_lock(chore_id)
        return deleted

    def restore(self, chore_id: ChoreId) -> bool:
        return self._set_deleted(chore_id, None)

    def _set_deleted(self, chore_id: ChoreId, when: Optional[datetime]) -> bool:
        with Session(self.engine) as session:
            chore = session.get(Chore, chore_id)
            if not chore or (chore.date_deleted is None) == (when is None):
                return False
            chore.date_deleted = when
            session.add(chore)
            session.commit()
            logger.info("%s chore %s", "Deleted" if when else "Restored", chore_id)
            return True

    def recompute_due_date(self, chore: Chore) -> bool:
        """Recompute and store ``chore.next_due_date`` from its latest activity.

        ``chore`` is updated in place. Returns ``True`` if the due date
        changed. Recomputations and updates of the same chore are serialised
        within this process.
        """
        with _due_date_lock(chore.id):
            with Session(self.engine) as session:
                changed = update_next_due_date(
                    chore, _latest_activity_date(session, chore.id)
                )
                if changed:
                    stored = session.get(Chore, chore.id)
                    if stored:
                        stored.next_due_date = chore.next_due_date
                        session.add(stored)
                        session.commit()
                        logger.info(
                            "Chore %s is next due on %s", chore.id, chore.next_due_date
                        )
                return changed


class ChoreActivityStore:
    """CRUD helper for :class:`ChoreActivity` objects and score queries."""

    def __init__(self, engine):
        self.engine = engine

    def get(self, activity_id: ChoreActivityId) -> Optional[ChoreActivity]:
        with Session(self.engine) as session:
            activity = session.get(ChoreActivity, activity_id)
            return _normalize(activity) if activity else None

    def list_for_chore(
        self, chore_id: ChoreId, include_deleted: bool = False
    ) -> List[ChoreActivity]:
        with Session(self.engine) as session:
            stmt = select(ChoreActivity).where(ChoreActivity.chore_id == chore_id)
            if not include_deleted:
                stmt = stmt.where(ChoreActivity.date_deleted.is_(None))
            stmt = stmt.order_by(ChoreActivity.date.desc(), ChoreActivity.date_created.desc())
            return [_normalize(a) for a in session.exec(stmt).all()]

    def list_for_chore_list(
        self, chore_list_id: ChoreListId, include_deleted: bool = False
    ) -> List[ChoreActivity]:
        with Session(self.engine) as session:
            stmt = (
                select(ChoreActivity)
                .join(Chore, ChoreActivity.chore_id == Chore.id)
                .where(Chore.chore_list_id == chore_list_id)
            )
            if not include_deleted:
                stmt = stmt.where(ChoreActivity.date_deleted.is_(None))
            stmt = stmt.order_by(ChoreActivity.date.desc(), ChoreActivity.date_created.desc())
            return [_normalize(a) for a in session.exec(stmt).all()]

    def create(self, activity: ChoreActivity) -> ChoreActivity:
        activity.comment = _clean_text(activity.comment)
        activity.date_created = to_utc(activity.date_created or get_now())
        with Session(self.engine) as session:
            session.add(activity)
            session.commit()
            session.refresh(activity)
            logger.info(
                "Created activity %s for chore %s on %s",
                activity.id,
                activity.chore_id,
                activity.date,
            )
            return _normalize(activity)

    def update(self, activity: ChoreActivity) -> None:
        with Session(self.engine) as session:
            stored = session.get(ChoreActivity, activity.id)
            if not stored:
                return
            stored.chore_id = activity.chore_id
            stored.date = activity.date
            stored.comment = _clean_text(activity.comment)
            session.add(stored)
            session.commit()
            logger.info("Updated activity %s", activity.id)

    def delete(self, activity_id: ChoreActivityId) -> bool:
        return self._set_deleted(activity_id, to_utc(get_now()))

    def restore(self, activity_id: ChoreActivityId) -> bool:
        return self._set_deleted(activity_id, None)

    def _set_deleted(self, activity_id: ChoreActivityId, when: Optional[datetime]) -> bool:
        with Session(self.engine) as session:
            activity = session.get(ChoreActivity, activity_id)
            if not activity or (activity.date_deleted is None) == (when is None):
                return False
            activity.date_deleted = when
            session.add(activity)
            session.commit()
            logger.info("%s activity %s", "Deleted" if when else "Restored", activity_id)
            return True

    def oldest_date_for_chore_list(self, chore_list_id: ChoreListId) -> Optional[date]:
        """Date of the oldest activity that counts towards a score in the list."""
        with Session(self.engine) as session:
            return session.exec(
                select(func.min(ChoreActivity.date))
                .join(Chore, ChoreActivity.chore_id == Chore.id)
                .join(User, ChoreActivity.user_id == User.id)
                .where(Chore.chore_list_id == chore_list_id)
                .where(ChoreActivity.date_deleted.is_(None))
                .where(Chore.date_deleted.is_(None))
                .where(User.date_deleted.is_(None))
            ).first()

    def score_per_user(
        self,
        chore_list_id: ChoreListId,
        date_start: Optional[date] = None,
        date_end: Optional[date] = None,
    ) -> List[Tuple[UserId, int]]:
        """Sum the points of each user's activities in a chore list.

        Deleted activities, chores, chore lists and users are ignored. The
        optional bounds restrict activity dates inclusively. Highest score
        first.
        """
        total = func.sum(Chore.points)
        stmt = (
            select(ChoreActivity.user_id, total)
            .join(Chore, ChoreActivity.chore_id == Chore.id)
            .join(ChoreList, Chore.chore_list_id == ChoreList.id)
            .join(User, ChoreActivity.user_id == User.id)
            .where(ChoreList.id == chore_list_id)
            .where(ChoreActivity.date_deleted.is_(None))
            .where(Chore.date_deleted.is_(None))
            .where(ChoreList.date_deleted.is_(None))
            .where(User.date_deleted.is_(None))
        )
        if date_start is not None:
            stmt = stmt.where(ChoreActivity.date >= date_start)
        if date_end is not None:
            stmt = stmt.where(ChoreActivity.date <= date_end)
        stmt = stmt.group_by(ChoreActivity.user_id).order_by(total.desc())
        with Session(self.engine) as session:
            return [(user_id, int(score or 0)) for user_id, score in session.exec(stmt).all()]
