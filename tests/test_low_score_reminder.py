from datetime import date

import pytest
from sqlmodel import Session, create_engine

from wgchores.absences import AbsenceStore
from wgchores.chores import Chore, ChoreActivity, ChoreActivityStore, ChoreListStore, ChoreStore
from wgchores.notifications import LoggingNotifier, find_low_score_users, low_score_reminder
from wgchores.settings import Setting, SettingsStore, LOW_SCORE_THRESHOLD_KEY
from wgchores.users import UserStore, init_db


TODAY = date(2024, 3, 10)


class RecordingNotifier:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    def notify_low_score(self, user, chore_lists):
        if user.handle in self.fail_for:
            raise RuntimeError("mail server down")
        self.sent.append((user.handle, [cl.name for cl in chore_lists]))


@pytest.fixture
def flat(tmp_path, monkeypatch):
    monkeypatch.setenv("WG_ADMIN_PASSWORD", "admin")
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(engine)
    user_store = UserStore(engine)
    chore_list_store = ChoreListStore(engine)
    chore_store = ChoreStore(engine)
    activity_store = ChoreActivityStore(engine)
    absence_store = AbsenceStore(engine)

    admin = user_store.get_by_handle("admin")
    bob = user_store.create("Bob", "bob", "secret")
    carol = user_store.create("Carol", "carol", "secret")

    kitchen = chore_list_store.create("Kitchen")
    chore_list_store.create("Garden")
    big = chore_store.create(Chore(chore_list_id=kitchen.id, name="Oven", points=10))
    small = chore_store.create(Chore(chore_list_id=kitchen.id, name="Dishes", points=4))
    activity_store.create(ChoreActivity(chore_id=big.id, user_id=admin.id, date=TODAY))
    activity_store.create(ChoreActivity(chore_id=small.id, user_id=bob.id, date=TODAY))

    stores = (user_store, chore_list_store, activity_store, absence_store)
    return engine, stores, {"admin": admin, "bob": bob, "carol": carol, "kitchen": kitchen}


def test_find_low_score_users(flat):
    _, stores, named = flat

    # Mean is 14 / 3; half of that is about 2.3
    low = find_low_score_users(*stores, 50, today=TODAY)
    assert low == {named["carol"].id: [named["kitchen"].id]}

    low = find_low_score_users(*stores, 100, today=TODAY)
    assert set(low) == {named["bob"].id, named["carol"].id}


def test_lists_without_points_are_skipped(flat):
    _, stores, named = flat

    low = find_low_score_users(*stores, 100, today=TODAY)

    assert all(ids == [named["kitchen"].id] for ids in low.values())


def test_reminder_continues_after_failure(flat):
    _, stores, _ = flat
    notifier = RecordingNotifier(fail_for={"carol"})

    notified = low_score_reminder(notifier, *stores, 100, today=TODAY)

    assert notified == 1
    assert notifier.sent == [("bob", ["Kitchen"])]


def test_logging_notifier(flat, caplog):
    _, stores, _ = flat

    with caplog.at_level("INFO", logger="wgchores.notifications"):
        notified = low_score_reminder(LoggingNotifier(), *stores, 50, today=TODAY)

    assert notified == 1
    assert "Low score reminder for Carol" in caplog.text


def test_threshold_setting(flat):
    engine = flat[0]
    settings_store = SettingsStore(engine)

    assert settings_store.get_low_score_threshold() == 50
    settings_store.set_low_score_threshold(75)
    assert settings_store.get_low_score_threshold() == 75
    with pytest.raises(ValueError):
        settings_store.set_low_score_threshold(0)

    with Session(engine) as session:
        setting = session.get(Setting, LOW_SCORE_THRESHOLD_KEY)
        setting.value = 500
        session.add(setting)
        session.commit()
    assert settings_store.get_low_score_threshold() == 100
