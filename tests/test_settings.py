import pytest
from sqlmodel import Session

from calshare.settings import Setting, SettingsStore


def test_week_starts_on_defaults_and_persists(engine):
    settings = SettingsStore(engine)

    assert settings.get_week_starts_on("alice") == 0
    settings.set_week_starts_on("alice", 1)
    assert settings.get_week_starts_on("alice") == 1
    assert settings.get_week_starts_on("bob") == 0

    with pytest.raises(ValueError):
        settings.set_week_starts_on("alice", 7)
    assert settings.get_week_starts_on("alice") == 1


def test_week_starts_on_corrects_out_of_range_values(engine):
    with Session(engine) as session:
        session.add(Setting(user_id="alice", key="week_starts_on", value=8))
        session.commit()

    assert SettingsStore(engine).get_week_starts_on("alice") == 1
