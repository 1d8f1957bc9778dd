from __future__ import annotations

from sqlmodel import Field, Session, SQLModel


WEEK_STARTS_ON = "week_starts_on"


class Setting(SQLModel, table=True):
    user_id: str = Field(primary_key=True)
    key: str = Field(primary_key=True)
    value: int


class SettingsStore:
    """Per-user preferences stored as :class:`Setting` rows."""

    def __init__(self, engine):
        self.engine = engine

    def get_week_starts_on(self, user_id: str) -> int:
        with Session(self.engine) as session:
            setting = session.get(Setting, (user_id, WEEK_STARTS_ON))
            if not setting:
                return 0

            # Weekdays are 0 (Sunday) through 6 (Saturday); anything else
            # stored by hand is corrected so grid computations stay valid.
            if not 0 <= setting.value <= 6:
                setting.value = setting.value % 7
                session.add(setting)
                session.commit()

            return setting.value

    def set_week_starts_on(self, user_id: str, weekday: int) -> None:
        if not 0 <= weekday <= 6:
            raise ValueError("week_starts_on must be between 0 (Sunday) and 6 (Saturday)")
        with Session(self.engine) as session:
            setting = session.get(Setting, (user_id, WEEK_STARTS_ON))
            if setting:
                setting.value = weekday
            else:
                setting = Setting(user_id=user_id, key=WEEK_STARTS_ON, value=weekday)
            session.add(setting)
            session.commit()
