from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from calshare.time_utils import (
    day_bounds,
    days_in_range,
    ensure_tz,
    hour_offset,
    month_grid_bounds,
    parse_datetime,
    week_bounds,
)


@pytest.fixture(autouse=True)
def configure_tz(monkeypatch):
    monkeypatch.setenv("CALSHARE_TZ", "America/Los_Angeles")


def test_ensure_tz_converts_fixed_offset_to_configured_zone():
    dt = datetime.fromisoformat("2023-10-29T09:00:00-07:00")

    converted = ensure_tz(dt)

    assert isinstance(converted.tzinfo, ZoneInfo)
    assert converted.tzinfo.key == "America/Los_Angeles"
    assert converted.utcoffset() == timedelta(hours=-7)
    # Adding a week should cross the DST boundary and adopt the new offset
    assert (converted + timedelta(days=7)).utcoffset() == timedelta(hours=-8)


def test_parse_datetime_normalizes_timezone():
    dt = parse_datetime("2023-10-29T16:00:00+00:00")

    assert dt.tzinfo.key == "America/Los_Angeles"
    assert dt.hour == 9


def test_day_bounds_follow_local_midnight_across_dst():
    bounds = day_bounds(date(2024, 3, 10))

    assert bounds.start == datetime(2024, 3, 10, tzinfo=ZoneInfo("America/Los_Angeles"))
    assert bounds.end == datetime(2024, 3, 11, tzinfo=ZoneInfo("America/Los_Angeles"))
    assert bounds.end.timestamp() - bounds.start.timestamp() == 23 * 3600


def test_week_bounds_default_to_sunday():
    # 2024-05-15 is a Wednesday
    bounds = week_bounds(date(2024, 5, 15))

    assert bounds.start.date() == date(2024, 5, 12)
    assert bounds.end.date() == date(2024, 5, 19)
    assert bounds.start.weekday() == 6


def test_week_bounds_honor_configured_first_weekday():
    monday = week_bounds(date(2024, 5, 15), week_starts_on=1)
    saturday = week_bounds(date(2024, 5, 15), week_starts_on=6)

    assert monday.start.date() == date(2024, 5, 13)
    assert saturday.start.date() == date(2024, 5, 11)
    assert week_bounds(date(2024, 5, 13), week_starts_on=1).start.date() == date(2024, 5, 13)


def test_month_grid_includes_lead_and_trail_days():
    bounds = month_grid_bounds(date(2024, 2, 14))
    days = days_in_range(bounds)

    assert days[0] == date(2024, 1, 28)
    assert days[-1] == date(2024, 3, 2)
    assert len(days) == 35
    assert len(days) % 7 == 0


def test_month_grid_handles_december():
    days = days_in_range(month_grid_bounds(date(2023, 12, 25)))

    assert days[0] == date(2023, 11, 26)
    assert days[-1] == date(2024, 1, 6)
    assert len(days) == 42


def test_hour_offset_uses_local_time():
    assert hour_offset(parse_datetime("2024-05-15T13:45")) == 13.75
    assert hour_offset(datetime(2024, 5, 15, 20, 30, tzinfo=ZoneInfo("UTC"))) == 13.5
