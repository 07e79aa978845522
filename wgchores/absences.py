from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import or_
from sqlmodel import Field, Session, SQLModel, select

from .time_utils import ensure_tz, get_now, get_today, iter_days, to_utc
from .values import AbsenceId, UserId, new_id


logger = logging.getLogger(__name__)

# How far back an absence may start when it is created, and how long after
# it ended it may still be edited or deleted/restored.
CREATE_MIN_START_DAYS = 4
EDIT_WINDOW_DAYS = 4
DELETE_WINDOW_DAYS = 6


class Absence(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=new_id, primary_key=True)
    user_id: uuid.UUID = Field(foreign_key="user.id", index=True)
    date_start: date
    date_end: Optional[date] = None
    comment: Optional[str] = None
    date_created: datetime = Field(default_factory=get_now)
    date_deleted: Optional[datetime] = None

    def is_deleted(self) -> bool:
        return self.date_deleted is not None

    def is_active_on(self, day: date, today: date | None = None) -> bool:
        """Return whether the absence covers ``day``.

        An open-ended absence covers every day from its start through
        ``today``.
        """
        if self.date_start > day:
            return False
        if self.date_end is None:
            if today is None:
                today = get_today()
            return day <= today
        return day <= self.date_end

    def is_in_past(self, today: date | None = None) -> bool:
        if today is None:
            today = get_today()
        return self.date_end is not None and self.date_end < today

    def is_in_future(self, today: date | None = None) -> bool:
        if today is None:
            today = get_today()
        return self.date_start > today

    def is_active(self, today: date | None = None) -> bool:
        if today is None:
            today = get_today()
        return self.is_active_on(today, today)

    def num_days(self) -> Optional[int]:
        """Number of days covered, or ``None`` while the absence is open-ended."""
        if self.date_end is None:
            return None
        return (self.date_end - self.date_start).days + 1

    def is_editable(self, today: date | None = None) -> bool:
        return self._ended_no_earlier_than(EDIT_WINDOW_DAYS, today)

    def is_deletable(self, today: date | None = None) -> bool:
        return self._ended_no_earlier_than(DELETE_WINDOW_DAYS, today)

    def _ended_no_earlier_than(self, days: int, today: date | None) -> bool:
        if self.date_end is None:
            return True
        if today is None:
            today = get_today()
        return self.date_end >= today - timedelta(days=days)


def validate_absence_dates(
    date_start: date, date_end: Optional[date], today: date | None = None
) -> None:
    """Raise ``ValueError`` if the dates cannot be stored for an absence."""
    if today is None:
        today = get_today()
    if date_start < today - timedelta(days=CREATE_MIN_START_DAYS):
        raise ValueError("Absence cannot start that far in the past")
    if date_end is not None and date_end < date_start:
        raise ValueError("Absence cannot end before it starts")


def _group_date(absence: Absence, today: date) -> date:
    if absence.is_in_past(today):
        return absence.date_end
    if absence.is_in_future(today):
        return absence.date_start
    return today


def group_and_sort_by_date(
    absences: Iterable[Absence], latest_first: bool, today: date | None = None
) -> List[Tuple[date, List[Absence]]]:
    """Group absences under the date they are shown at.

    Past absences are shown at their end, future ones at their start and
    ongoing ones at ``today``. Groups are contiguous runs of the sorted
    absences, earliest first unless ``latest_first``.
    """
    if today is None:
        today = get_today()
    ordered = sorted(
        absences,
        key=lambda a: (_group_date(a, today), a.date_start, ensure_tz(a.date_created)),
    )
    if latest_first:
        ordered.reverse()

    groups: List[Tuple[date, List[Absence]]] = []
    for absence in ordered:
        group_date = _group_date(absence, today)
        if groups and groups[-1][0] == group_date:
            groups[-1][1].append(absence)
        else:
            groups.append((group_date, [absence]))
    return groups


def count_absent_days(
    absences: Iterable[Absence], period_start: date, period_end: date
) -> int:
    """Count the days in ``[period_start, period_end]`` covered by any absence.

    Days covered by several overlapping absences are counted once.
    Open-ended absences count through ``period_end``.
    """
    absences = list(absences)
    if not absences or period_end < period_start:
        return 0
    first_start = max(period_start, min(a.date_start for a in absences))
    return sum(
        1
        for day in iter_days(first_start, period_end)
        if any(a.is_active_on(day, period_end) for a in absences)
    )


class AbsenceStore:
    """CRUD helper for :class:`Absence` objects."""

    def __init__(self, engine):
        self.engine = engine

    def get(self, absence_id: AbsenceId) -> Optional[Absence]:
        with Session(self.engine) as session:
            absence = session.get(Absence, absence_id)
            return _normalize(absence) if absence else None

    def list_absences(
        self, user_id: UserId | None = None, include_deleted: bool = False
    ) -> List[Absence]:
        with Session(self.engine) as session:
            stmt = select(Absence)
            if user_id is not None:
                stmt = stmt.where(Absence.user_id == user_id)
            if not include_deleted:
                stmt = stmt.where(Absence.date_deleted.is_(None))
            stmt = stmt.order_by(
                Absence.date_end.desc().nulls_first(),
                Absence.date_start.desc(),
                Absence.date_created.desc(),
            )
            return [_normalize(a) for a in session.exec(stmt).all()]

    def list_active_in_period(self, date_start: date, date_end: date) -> List[Absence]:
        """Non-deleted absences overlapping ``[date_start, date_end]``."""
        with Session(self.engine) as session:
            stmt = (
                select(Absence)
                .where(Absence.date_deleted.is_(None))
                .where(Absence.date_start <= date_end)
                .where(or_(Absence.date_end.is_(None), Absence.date_end >= date_start))
                .order_by(
                    Absence.date_end.desc().nulls_first(),
                    Absence.date_start.desc(),
                    Absence.date_created.desc(),
                )
            )
            return [_normalize(a) for a in session.exec(stmt).all()]

    def create(
        self,
        user_id: UserId,
        date_start: date,
        date_end: Optional[date] = None,
        comment: Optional[str] = None,
        today: date | None = None,
    ) -> Absence:
        validate_absence_dates(date_start, date_end, today)
        absence = Absence(
            user_id=user_id,
            date_start=date_start,
            date_end=date_end,
            comment=(comment or "").strip() or None,
            date_created=to_utc(get_now()),
        )
        with Session(self.engine) as session:
            session.add(absence)
            session.commit()
            session.refresh(absence)
            logger.info(
                "Created absence %s for user %s (%s to %s)",
                absence.id,
                user_id,
                date_start,
                date_end or "open end",
            )
            return _normalize(absence)

    def update(self, absence: Absence, today: date | None = None) -> None:
        validate_absence_dates(absence.date_start, absence.date_end, today)
        with Session(self.engine) as session:
            stored = session.get(Absence, absence.id)
            if not stored:
                return
            stored.date_start = absence.date_start
            stored.date_end = absence.date_end
            stored.comment = (absence.comment or "").strip() or None
            session.add(stored)
            session.commit()
            logger.info("Updated absence %s", absence.id)

    def delete(self, absence_id: AbsenceId) -> bool:
        return self._set_deleted(absence_id, to_utc(get_now()))

    def restore(self, absence_id: AbsenceId) -> bool:
        return self._set_deleted(absence_id, None)

    def _set_deleted(self, absence_id: AbsenceId, when: Optional[datetime]) -> bool:
        with Session(self.engine) as session:
            absence = session.get(Absence, absence_id)
            if not absence or (absence.date_deleted is None) == (when is None):
                return False
            absence.date_deleted = when
            session.add(absence)
            session.commit()
            logger.info("%s absence %s", "Deleted" if when else "Restored", absence_id)
            return True


def _normalize(absence: Absence) -> Absence:
    absence.date_created = ensure_tz(absence.date_created)
    absence.date_deleted = ensure_tz(absence.date_deleted)
    return absence
