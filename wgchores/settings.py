from __future__ import annotations

from sqlmodel import Field, Session, SQLModel


LOW_SCORE_THRESHOLD_KEY = "low_score_threshold_percent"
DEFAULT_LOW_SCORE_THRESHOLD = 50


class Setting(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value: int


class SettingsStore:
    """CRUD helper for :class:`Setting` objects."""

    def __init__(self, engine):
        self.engine = engine

    def get_low_score_threshold(self) -> int:
        """Percentage of a list's mean score below which a user is reminded."""
        with Session(self.engine) as session:
            setting = session.get(Setting, LOW_SCORE_THRESHOLD_KEY)
            if not setting:
                setting = Setting(
                    key=LOW_SCORE_THRESHOLD_KEY, value=DEFAULT_LOW_SCORE_THRESHOLD
                )
                session.add(setting)
                session.commit()
                return DEFAULT_LOW_SCORE_THRESHOLD

            # Clamp stored values to the valid range of 1-100 percent.
            if setting.value < 1:
                setting.value = 1
                session.add(setting)
                session.commit()
            elif setting.value > 100:
                setting.value = 100
                session.add(setting)
                session.commit()

            return setting.value

    def set_low_score_threshold(self, percent: int) -> None:
        if not 1 <= percent <= 100:
            raise ValueError("Low score threshold must be between 1 and 100 percent")
        with Session(self.engine) as session:
            setting = session.get(Setting, LOW_SCORE_THRESHOLD_KEY)
            if setting:
                setting.value = percent
            else:
                setting = Setting(key=LOW_SCORE_THRESHOLD_KEY, value=percent)
            session.add(setting)
            session.commit()
