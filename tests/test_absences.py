import uuid
from datetime import date

import pytest
from sqlmodel import create_engine

from wgchores.absences import (
    Absence,
    AbsenceStore,
    count_absent_days,
    group_and_sort_by_date,
    validate_absence_dates,
)
from wgchores.users import UserStore, init_db


TODAY = date(2024, 3, 10)


def _absence(start, end=None):
    return Absence(user_id=uuid.uuid4(), date_start=start, date_end=end)


def test_grouping_by_display_date():
    past = _absence(date(2024, 3, 1), date(2024, 3, 5))
    open_ended = _absence(date(2024, 3, 8))
    ongoing = _absence(date(2024, 3, 9), date(2024, 3, 12))
    future = _absence(date(2024, 3, 15), date(2024, 3, 20))

    groups = group_and_sort_by_date([past, open_ended, future, ongoing], True, TODAY)

    assert [d for d, _ in groups] == [date(2024, 3, 15), TODAY, date(2024, 3, 5)]
    assert groups[0][1] == [future]
    assert groups[1][1] == [ongoing, open_ended]
    assert groups[2][1] == [past]


def test_grouping_earliest_first():
    past = _absence(date(2024, 3, 1), date(2024, 3, 5))
    future = _absence(date(2024, 3, 15))

    groups = group_and_sort_by_date([future, past], False, TODAY)

    assert groups == [(date(2024, 3, 5), [past]), (date(2024, 3, 15), [future])]
    assert group_and_sort_by_date([], True, TODAY) == []


def test_absence_ending_today_is_active():
    absence = _absence(date(2024, 3, 1), TODAY)

    assert absence.is_active(TODAY)
    assert not absence.is_in_past(TODAY)
    assert absence.num_days() == 10
    assert _absence(TODAY).num_days() is None


def test_count_absent_days_counts_overlaps_once():
    absences = [
        _absence(date(2024, 3, 2), date(2024, 3, 4)),
        _absence(date(2024, 3, 3), date(2024, 3, 6)),
        _absence(date(2024, 2, 20), date(2024, 3, 1)),
    ]

    assert count_absent_days(absences, date(2024, 3, 1), TODAY) == 6
    assert count_absent_days([], date(2024, 3, 1), TODAY) == 0


def test_count_absent_days_open_ended_runs_through_period_end():
    assert count_absent_days([_absence(date(2024, 3, 6))], date(2024, 3, 1), TODAY) == 5


def test_absence_date_validation():
    validate_absence_dates(date(2024, 3, 6), None, TODAY)
    with pytest.raises(ValueError):
        validate_absence_dates(date(2024, 3, 5), None, TODAY)
    with pytest.raises(ValueError):
        validate_absence_dates(date(2024, 3, 12), date(2024, 3, 11), TODAY)


def test_edit_and_delete_windows():
    ended_five_days_ago = _absence(date(2024, 3, 1), date(2024, 3, 5))
    ended_seven_days_ago = _absence(date(2024, 3, 1), date(2024, 3, 3))

    assert not ended_five_days_ago.is_editable(TODAY)
    assert ended_five_days_ago.is_deletable(TODAY)
    assert not ended_seven_days_ago.is_deletable(TODAY)
    assert _absence(date(2024, 1, 1)).is_editable(TODAY)


def test_store_lists_active_absences(tmp_path, monkeypatch):
    monkeypatch.setenv("WG_ADMIN_PASSWORD", "admin")
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    admin = UserStore(engine).get_by_handle("admin")
    store = AbsenceStore(engine)

    inside = store.create(
        admin.id, date(2024, 3, 2), date(2024, 3, 4), "Holiday", today=date(2024, 3, 2)
    )
    store.create(admin.id, date(2024, 3, 20), None, today=TODAY)
    deleted = store.create(admin.id, date(2024, 3, 7), date(2024, 3, 8), today=TODAY)
    store.delete(deleted.id)

    active = store.list_active_in_period(date(2024, 3, 1), TODAY)
    assert [a.id for a in active] == [inside.id]
    assert inside.comment == "Holiday"
    assert len(store.list_absences(admin.id)) == 2
    assert len(store.list_absences(admin.id, include_deleted=True)) == 3

    assert store.restore(deleted.id)
    assert not store.restore(deleted.id)
